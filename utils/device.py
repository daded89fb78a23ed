import re

from flask import g, request, session

MOBILE_UA = re.compile(
    r"Mobile|Android|iPhone|iPod|iPad|BlackBerry|IEMobile|Opera Mini|webOS|Windows Phone",
    re.IGNORECASE,
)
MOBILE_MAX_VIEWPORT = 900


def detect_mobile(headers, override=None) -> bool:
    """Decide whether a request comes from a mobile device.

    Order: explicit override, ``Sec-CH-UA-Mobile`` client hint, ``Viewport-Width``
    client hint, then the user agent string.
    """
    if override is not None:
        return bool(override)
    hint = headers.get("Sec-CH-UA-Mobile")
    if hint:
        return hint.strip() == "?1"
    viewport = headers.get("Viewport-Width")
    if viewport:
        try:
            return float(viewport) <= MOBILE_MAX_VIEWPORT
        except ValueError:
            pass
    return bool(MOBILE_UA.search(headers.get("User-Agent", "")))


def detect_device():
    """before_request hook: set g.is_mobile and g.device_type."""
    requested = request.args.get("mobile")
    if requested in ("1", "true"):
        session["is_mobile"] = True
    elif requested in ("0", "false"):
        session["is_mobile"] = False
    g.is_mobile = detect_mobile(request.headers, session.get("is_mobile"))
    g.device_type = "mobile" if g.is_mobile else "desktop"
