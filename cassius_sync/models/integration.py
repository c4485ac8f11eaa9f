from typing import Optional

from .imports import ApiModel


class IntegrationSettings(ApiModel):
    is_enabled: Optional[bool] = None
    target_calendar_id: Optional[str] = None
    target_calendar_name: Optional[str] = None
    source_calendar_id: Optional[str] = None
    source_calendar_name: Optional[str] = None
