"""FastAPI dependency injection — auth guard and store wiring."""
import os
from functools import lru_cache
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import jwt, JWTError

from bidplan.config import JOBS, PLANS
from bidplan.services.data_access import DataAccess, DataAccessError, SqlAlchemyDataAccess
from bidplan.services.measurement_reconciler import MeasurementReconciler
from bidplan.services.measurement_tags import MeasurementTagStore
from bidplan.services.scale_store import ScaleSettingsStore
from bidplan.services.takeoff_aggregator import TakeoffAggregator

SECRET_KEY = os.getenv("JWT_SECRET_KEY", "changethis_use_a_real_secret_in_production_64chars")
ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> str:
    """Verifies the bearer token and returns the user id from its `sub` claim."""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    try:
        payload = jwt.decode(credentials.credentials, SECRET_KEY, algorithms=[ALGORITHM])
        user_id: str = payload.get("sub")
        if not user_id:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return user_id


@lru_cache
def _default_data_access() -> SqlAlchemyDataAccess:
    return SqlAlchemyDataAccess()


def get_data_access() -> DataAccess:
    """Overridden in tests with an InMemoryDataAccess."""
    return _default_data_access()


async def _fetch_one(data: DataAccess, collection: str, record_id: str, label: str) -> dict:
    try:
        rows = await data.read(collection, {"id": record_id})
    except DataAccessError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Storage error: {e}")
    if not rows:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{label} not found")
    return rows[0]


async def get_plan(plan_id: str, data: DataAccess = Depends(get_data_access)) -> dict:
    return await _fetch_one(data, PLANS, plan_id, "Plan")


async def get_job(job_id: str, data: DataAccess = Depends(get_data_access)) -> dict:
    return await _fetch_one(data, JOBS, job_id, "Job")


def get_scale_store(data: DataAccess = Depends(get_data_access)) -> ScaleSettingsStore:
    return ScaleSettingsStore(data)


def get_reconciler(data: DataAccess = Depends(get_data_access)) -> MeasurementReconciler:
    return MeasurementReconciler(data, ScaleSettingsStore(data))


def get_tag_store(data: DataAccess = Depends(get_data_access)) -> MeasurementTagStore:
    return MeasurementTagStore(data)


def get_aggregator(data: DataAccess = Depends(get_data_access)) -> TakeoffAggregator:
    return TakeoffAggregator(data)
