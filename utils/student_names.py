def name_from_email(email: str) -> str:
    """Display name from a ``first.last@school`` address, e.g. "Max Muster"."""
    local = (email or "").split("@", 1)[0]
    parts = [p for p in local.replace("_", ".").replace("-", ".").split(".") if p]
    if not parts:
        return email or ""
    return " ".join(p[:1].upper() + p[1:].lower() for p in parts)
