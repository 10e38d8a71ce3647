"""Request metadata extraction shared by tracking endpoints."""

import re
from typing import Optional

from fastapi import Request

from homeqr.models import DeviceTypeEnum

_TABLET_PATTERN = re.compile(r"ipad|tablet|playbook|silk|kindle", re.IGNORECASE)
_MOBILE_PATTERN = re.compile(
    r"mobile|android|iphone|ipod|blackberry|iemobile|opera mini", re.IGNORECASE
)

DIRECT_REFERRER = "direct"


def detect_device_type(user_agent: Optional[str]) -> str:
    """Classify a User-Agent header as mobile, tablet, desktop or unknown."""
    if not user_agent:
        return DeviceTypeEnum.unknown.value
    # Tablets first: iPad and Android tablet UAs also match the mobile pattern
    if _TABLET_PATTERN.search(user_agent):
        return DeviceTypeEnum.tablet.value
    lowered = user_agent.lower()
    if "android" in lowered and "mobile" not in lowered:
        return DeviceTypeEnum.tablet.value
    if _MOBILE_PATTERN.search(user_agent):
        return DeviceTypeEnum.mobile.value
    return DeviceTypeEnum.desktop.value


def extract_referrer(request: Request) -> str:
    """Referer header (either spelling), or "direct" when absent."""
    return (
        request.headers.get("referer")
        or request.headers.get("referrer")
        or DIRECT_REFERRER
    )
