"""Configuration management for rastertiler.

Settings are loaded with Dynaconf from multiple locations in order of
increasing priority:

1. Global settings (/etc/rastertiler/)
2. User settings (~/.config/rastertiler/)
3. Current directory settings (./)
4. Environment variable specified file (RASTERTILER_SETTINGS_FILE_FOR_DYNACONF)

Environment variables prefixed with ``RASTERTILER_`` override all files.

Attributes
----------
USER_DIR : pathlib.Path
    Path to user configuration directory.
GLOB_DIR : pathlib.Path
    Path to global configuration directory.
CURR_DIR : pathlib.Path
    Path to current working directory.
settings : Dynaconf
    The Dynaconf settings object with loaded configuration.
"""
import os
import pathlib

from dynaconf import Dynaconf, Validator

USER_DIR = pathlib.Path("~/.config/rastertiler").expanduser()
GLOB_DIR = pathlib.Path("/etc/rastertiler/")
CURR_DIR = pathlib.Path("./").absolute()
settings_files = [
    GLOB_DIR / "settings.toml",
    GLOB_DIR / ".secrets.toml",
    USER_DIR / "settings.toml",
    USER_DIR / ".secrets.toml",
    CURR_DIR / "settings.toml",
    CURR_DIR / ".secrets.toml"
    ]
extra_file = os.getenv("RASTERTILER_SETTINGS_FILE_FOR_DYNACONF")
if extra_file:
    settings_files.append(pathlib.Path(extra_file).absolute())

DEFAULTS = {
    "tile_size": 512,
    "min_zoom": 0,
    "max_zoom": 0,
    "workers": 4,
    "batch_size": 1000,
    "queue_size": 0,
    "use_overviews": True,
    "skip_empty": False,
    "palette_resampling": "nearest",
    "grayscale_resampling": "bilinear",
    "log_level": "INFO",
}

settings = Dynaconf(
    merge_enabled=True,
    envvar_prefix="RASTERTILER",
    settings_files=settings_files,
    environments=True,
    load_dotenv=True,
    validators=[Validator(key, default=value) for key, value in DEFAULTS.items()],
)


def change_env(new_env):
    """Change the active Dynaconf environment.

    Parameters
    ----------
    new_env : str
        The environment name to switch to (e.g., 'development', 'production').
    """
    settings.setenv(new_env)
    settings.reload()


def get(key):
    """Return a setting, falling back to the built-in default.

    Parameters
    ----------
    key : str
        Setting name; must be one of ``DEFAULTS``.
    """
    return settings.get(key, DEFAULTS[key])
