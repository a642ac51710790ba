from __future__ import annotations

from fastapi import APIRouter, Depends

from freshcontext.api.deps import PreferencesHolder, get_preferences
from freshcontext.models.schemas import SettingsPatch, SettingsResponse

router = APIRouter(prefix="/api/settings", tags=["settings"])


@router.get("", response_model=SettingsResponse)
async def read_settings(preferences: PreferencesHolder = Depends(get_preferences)):
    return SettingsResponse(**preferences.current.to_dict())


@router.patch("", response_model=SettingsResponse)
async def update_settings(patch: SettingsPatch, preferences: PreferencesHolder = Depends(get_preferences)):
    """Apply a partial update; values are sanitised, unknown keys ignored."""
    updated = preferences.update(patch.model_dump(exclude_none=True))
    return SettingsResponse(**updated.to_dict())
