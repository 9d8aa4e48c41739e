"""Configuration loading.

Load order: config file → environment variables → defaults
Exception: secrets (token signing key, directory bind password) only come
from environment variables.
"""

from __future__ import annotations

import configparser
import os

from pydantic import ValidationError

from console_identity.exceptions import ConfigurationError
from console_identity.utils.logger import get_logger

from .constants import (
    DEFAULT_CONFIG_PATH,
    DEFAULTS,
    ENV_CONFIG_PATH,
    ENV_PREFIX,
    SECRET_KEYS,
    SECTION_AUTH,
    SECTION_DATABASE,
    SECTION_DIRECTORY,
    SECTION_LOGGING,
)
from .schema import DirectoryConfig, Settings

logger = get_logger(__name__)

SECTION_KEYS: dict[str, list[str]] = {
    SECTION_DATABASE: ["path"],
    SECTION_AUTH: ["bcrypt_rounds", "token_issuer"],
    SECTION_LOGGING: ["level"],
    SECTION_DIRECTORY: [
        name for name in DirectoryConfig.model_fields if name != "bind_password"
    ],
}


def apply_env_overrides(
    config: configparser.ConfigParser,
    section: str,
    key: str,
    env_var: str | None = None,
) -> None:
    """Fill a missing config value from ``CONSOLE_IDENTITY_<SECTION>_<KEY>``."""
    if env_var is None:
        env_var = f"{ENV_PREFIX}{section.upper()}_{key.upper()}"

    value = os.environ.get(env_var)
    if value is None:
        return
    if not config.has_section(section):
        config.add_section(section)
    if config.has_option(section, key):
        logger.debug(
            "Skipping environment override because config already defines the value",
            event="config.env_override_skipped",
            section=section,
            key=key,
        )
        return
    config.set(section, key, value)
    logger.debug(
        "Applied environment override for config key",
        event="config.env_override_applied",
        section=section,
        key=key,
        env_var=env_var,
    )


def apply_all_env_overrides(config: configparser.ConfigParser) -> None:
    for section, keys in SECTION_KEYS.items():
        for key in keys:
            apply_env_overrides(config, section, key)


def apply_defaults(config: configparser.ConfigParser) -> None:
    for section, values in DEFAULTS.items():
        if not config.has_section(section):
            config.add_section(section)
        for key, value in values.items():
            if not config.has_option(section, key):
                config.set(section, key, value)


def load_config(source: str | None = None) -> configparser.ConfigParser:
    """Read the INI source and apply environment overrides and defaults."""
    source = source or os.environ.get(ENV_CONFIG_PATH) or DEFAULT_CONFIG_PATH
    config = configparser.ConfigParser(interpolation=None)

    if os.path.exists(source):
        logger.info(
            "Loading configuration from file source",
            event="config.file_load",
            source=source,
        )
        config.read(source)
    else:
        logger.warning(
            "Configuration file source does not exist; using defaults and overrides",
            event="config.missing_file",
            source=source,
        )

    apply_all_env_overrides(config)
    apply_defaults(config)

    for (section, key), env_var in SECRET_KEYS.items():
        if config.has_option(section, key):
            logger.warning(
                "Ignoring secret found in configuration file; secrets come from the environment",
                event="config.secret_in_file",
                section=section,
                key=key,
                env_var=env_var,
            )
            config.remove_option(section, key)
    return config


def _section_dict(config: configparser.ConfigParser, section: str) -> dict[str, str]:
    if not config.has_section(section):
        return {}
    return {key: value for key, value in config.items(section)}


def _secrets() -> dict[tuple[str, str], str]:
    resolved = {}
    for (section, key), env_var in SECRET_KEYS.items():
        value = os.environ.get(env_var)
        if value:
            resolved[(section, key)] = value
    return resolved


def build_settings(config: configparser.ConfigParser) -> Settings:
    """Validate a parsed configuration into a :class:`Settings` object."""
    payload: dict[str, dict[str, str]] = {
        section: _section_dict(config, section) for section in SECTION_KEYS
    }
    for (section, key), value in _secrets().items():
        payload.setdefault(section, {})[key] = value

    try:
        return Settings.model_validate(payload)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ()))
        logger.error(
            "Configuration validation failed",
            event="config.validation_failed",
            field=field,
            error=first.get("msg"),
        )
        raise ConfigurationError(
            f"Invalid configuration: {field}: {first.get('msg')}", field=field
        ) from exc


def load_settings(source: str | None = None) -> Settings:
    return build_settings(load_config(source))


def directory_bind_password_override() -> str | None:
    """Bind password from the environment, which wins over stored settings."""
    return _secrets().get((SECTION_DIRECTORY, "bind_password"))
