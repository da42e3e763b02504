"""学校品牌信息查询（只读）。

文档服务路径：{branding_base_url}/tenants/{school_id}/settings/general。
只用于问候语与侧边栏的展示文本，任何失败都返回 None，不影响对话。
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from tutor_core.config.settings import settings
from tutor_core.infrastructure.logging.logger import logger

DEFAULT_DISPLAY_NAME = "Scholr"


@dataclass
class SchoolSettings:
    school_name: str
    contact_email: str = ""
    address: str = ""
    academic_year: str = ""
    current_term: str = ""
    terms: List[str] = field(default_factory=list)
    logo_url: Optional[str] = None
    website: Optional[str] = None
    phone: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SchoolSettings":
        return cls(
            school_name=data.get("schoolName") or "",
            contact_email=data.get("contactEmail") or "",
            address=data.get("address") or "",
            academic_year=data.get("academicYear") or "",
            current_term=data.get("currentTerm") or "",
            terms=list(data.get("terms") or []),
            logo_url=data.get("logoUrl"),
            website=data.get("website"),
            phone=data.get("phone"),
        )


def display_name(school: Optional[SchoolSettings]) -> str:
    if school and school.school_name:
        return school.school_name
    return DEFAULT_DISPLAY_NAME


class SchoolSettingsClient:
    """学校设置查询客户端。"""

    def __init__(self, cfg=settings):
        self._settings = cfg

    async def get_school_settings(self, school_id: str) -> Optional[SchoolSettings]:
        base = getattr(self._settings, "branding_base_url", None)
        if not base or not school_id:
            return None
        url = f"{base.rstrip('/')}/tenants/{school_id}/settings/general"
        try:
            async with httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = await client.get(url)
        except httpx.RequestError as e:
            logger.log(logging.WARNING, "Error fetching settings", extra={"extra": {"school_id": school_id, "error": str(e)}})
            return None
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            logger.log(
                logging.WARNING,
                "Error fetching settings",
                extra={"extra": {"school_id": school_id, "status": resp.status_code}},
            )
            return None
        try:
            data = resp.json()
        except ValueError as e:
            logger.log(logging.WARNING, "Malformed settings document", extra={"extra": {"school_id": school_id, "error": str(e)}})
            return None
        if not isinstance(data, dict):
            return None
        return SchoolSettings.from_dict(data)
