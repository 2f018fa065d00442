"""Engine settings API endpoints."""

from dataclasses import asdict
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session
from typing import Optional, List, Union
from pydantic import BaseModel
import logging

from workflow_engine.database import get_db
from workflow_engine.models.system_config import SystemConfig
from workflow_engine.services.config_service import ConfigService, load_engine_config

router = APIRouter()
logger = logging.getLogger(__name__)


class SettingUpdateRequest(BaseModel):
    value: str


class SettingItem(BaseModel):
    """One engine setting and where its value came from."""
    key: str
    value: Optional[Union[bool, int, float, str, dict, list]]
    value_type: str
    description: Optional[str]
    category: Optional[str]
    display_order: Optional[str]
    source: str  # 'default' or 'database'
    updated_at: Optional[str]
    updated_by: Optional[str]


class SettingListResponse(BaseModel):
    configs: List[SettingItem]
    categories: List[str]


def _known_setting(key: str) -> dict:
    default = SystemConfig.DEFAULTS.get(key)
    if default is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown engine setting '{key}'"
        )
    return default


def _check_value(key: str, value: str, value_type: str):
    """Reject values that would silently fall back to the default when read."""
    try:
        if value_type == "int":
            parsed = int(value)
        elif value_type == "float":
            parsed = float(value)
        else:
            return
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Setting '{key}' expects a {value_type}, got '{value}'"
        )
    if parsed < 0:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Setting '{key}' cannot be negative"
        )


@router.get("/", response_model=SettingListResponse)
async def list_settings(
    category: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """List engine settings, optionally for one category."""
    config_service = ConfigService(db)
    return SettingListResponse(
        configs=[SettingItem(**c) for c in config_service.get_all(category=category)],
        categories=config_service.get_categories()
    )


@router.get("/engine")
async def get_engine_config(db: Session = Depends(get_db)):
    """The resolved values the coordinator and worker pool would use now."""
    return asdict(load_engine_config(db))


@router.get("/{key}")
async def get_setting(key: str, db: Session = Depends(get_db)):
    _known_setting(key)
    return {"key": key, "value": ConfigService(db).get(key)}


@router.put("/{key}")
async def update_setting(
    key: str,
    request: SettingUpdateRequest,
    db: Session = Depends(get_db)
):
    """Change a setting. Engine settings are read at startup and apply after a restart."""
    default = _known_setting(key)
    _check_value(key, request.value, default["value_type"])

    config_service = ConfigService(db)
    if not config_service.set(key, request.value, updated_by="admin"):
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to update setting '{key}'"
        )

    logger.info(f"Engine setting {key} changed to {request.value}")
    return {
        "key": key,
        "value": config_service.get(key),
        "updated_by": "admin",
    }
