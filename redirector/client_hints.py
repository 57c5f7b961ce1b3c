"""Derive coarse client metadata for click events from request headers.

Only a device class and a country code survive; the IP address and the raw
User-Agent string are never handed to the recorder.

Country comes from the geo header set by the edge proxy or CDN in front of
the service. Without one the location is ``unknown``.
"""

import re
from collections.abc import Mapping

from redirector.enums import UNKNOWN_LOCATION, DeviceClass
from redirector.schemas import ClientHint

__all__ = ["COUNTRY_HEADERS", "classify_device", "coarse_location", "client_hint_from_headers"]

COUNTRY_HEADERS = (
    "cf-ipcountry",
    "cloudfront-viewer-country",
    "x-appengine-country",
    "x-country-code",
)

_BOT_RE = re.compile(r"bot|crawl|spider|slurp|preview|facebookexternalhit|curl|wget|python-requests|httpx", re.I)
_TABLET_RE = re.compile(r"ipad|tablet|kindle|silk|playbook|(android(?!.*mobile))", re.I)
_MOBILE_RE = re.compile(r"mobi|iphone|ipod|android|blackberry|opera mini|iemobile|windows phone", re.I)
_DESKTOP_RE = re.compile(r"windows nt|macintosh|mac os x|x11|linux|cros", re.I)
_COUNTRY_RE = re.compile(r"^[A-Z]{2}$")
# Placeholder values some CDNs send for unknown or anonymised origins.
_NON_COUNTRIES = {"XX", "T1", "A1", "A2", "O1", "ZZ"}


def classify_device(user_agent: str | None) -> DeviceClass:
    if not user_agent:
        return DeviceClass.UNKNOWN
    if _BOT_RE.search(user_agent):
        return DeviceClass.BOT
    if _TABLET_RE.search(user_agent):
        return DeviceClass.TABLET
    if _MOBILE_RE.search(user_agent):
        return DeviceClass.MOBILE
    if _DESKTOP_RE.search(user_agent):
        return DeviceClass.DESKTOP
    return DeviceClass.UNKNOWN


def coarse_location(headers: Mapping[str, str]) -> str:
    for name in COUNTRY_HEADERS:
        value = (headers.get(name) or "").strip().upper()
        if _COUNTRY_RE.match(value) and value not in _NON_COUNTRIES:
            return value
    return UNKNOWN_LOCATION


def client_hint_from_headers(headers: Mapping[str, str]) -> ClientHint:
    return ClientHint(
        device=classify_device(headers.get("user-agent")),
        location=coarse_location(headers),
    )
