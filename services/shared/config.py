import os


def require_env(name: str) -> str:
    """
    Read a required environment variable.
    Raises RuntimeError at startup if the variable is absent or empty.
    Use this for credentials (database password, broker token).
    """
    value = os.environ.get(name, "").strip()
    if not value:
        raise RuntimeError(
            f"Required environment variable '{name}' is not set. "
            "Set it before starting the service."
        )
    return value


def optional_env(name: str, default: str = "") -> str:
    """
    Read an optional environment variable with a safe default.
    Use this only for non-sensitive config (ports, timeouts, feature flags).
    """
    return os.environ.get(name, default)


def optional_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"Environment variable '{name}' must be an integer, got {raw!r}")


def optional_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"Environment variable '{name}' must be a number, got {raw!r}")


def optional_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")
