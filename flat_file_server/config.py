"""Configuration settings for the flat file server."""
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Mapping, Optional

# Download read size
CHUNK_SIZE = 64 * 1024

# Environment variables
PROFILE_ENV = "APP_ENV"
ENV_PREFIX = "FILE_SERVER_"


@dataclass(frozen=True)
class Settings:
    host: str
    port: int
    public_dir: Path
    files_dir: Path
    max_file_size: int
    chunk_size: int = CHUNK_SIZE
    fixtures_dir: Optional[Path] = None

    def __post_init__(self):
        if self.max_file_size <= 0:
            raise ValueError("max_file_size must be positive")
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")


def _default_profile(root: Path) -> Settings:
    return Settings(
        host="127.0.0.1",
        port=3000,
        public_dir=root / "public",
        files_dir=root / "files",
        max_file_size=1_000_000,
    )


def _test_profile(root: Path) -> Settings:
    return replace(
        _default_profile(root),
        port=3001,
        max_file_size=100_000,
        fixtures_dir=root / "tests" / "fixtures",
    )


PROFILES = {
    "default": _default_profile,
    "test": _test_profile,
}


def _int_override(environ: Mapping[str, str], name: str, current: int) -> int:
    raw = environ.get(ENV_PREFIX + name)
    if raw is None:
        return current
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX + name} must be an integer, got {raw!r}")


def load_settings(profile: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build the process-wide settings once, at startup.

    The profile comes from the argument, then APP_ENV, then "default".
    FILE_SERVER_* variables override single values of the chosen profile.
    """
    environ = os.environ if environ is None else environ
    name = profile or environ.get(PROFILE_ENV) or "default"
    if name not in PROFILES:
        raise ValueError(f"Unknown configuration profile: {name}")

    settings = PROFILES[name](Path.cwd())
    overrides = {}

    if ENV_PREFIX + "HOST" in environ:
        overrides["host"] = environ[ENV_PREFIX + "HOST"]
    if ENV_PREFIX + "PUBLIC_DIR" in environ:
        overrides["public_dir"] = Path(environ[ENV_PREFIX + "PUBLIC_DIR"])
    if ENV_PREFIX + "FILES_DIR" in environ:
        overrides["files_dir"] = Path(environ[ENV_PREFIX + "FILES_DIR"])
    overrides["port"] = _int_override(environ, "PORT", settings.port)
    overrides["max_file_size"] = _int_override(environ, "MAX_FILE_SIZE", settings.max_file_size)

    return replace(settings, **overrides)
