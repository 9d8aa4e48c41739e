"""Configuration constants and defaults."""

# Section names
SECTION_DATABASE = "database"
SECTION_AUTH = "auth"
SECTION_LOGGING = "logging"
SECTION_DIRECTORY = "directory"

# Environment variables
ENV_PREFIX = "CONSOLE_IDENTITY_"
ENV_CONFIG_PATH = "CONSOLE_IDENTITY_CONFIG"

# Secrets (environment only)
ENV_TOKEN_SECRET = "CONSOLE_IDENTITY_TOKEN_SECRET"
ENV_DIRECTORY_BIND_PASSWORD = "DIRECTORY_BIND_PASSWORD"

DEFAULT_CONFIG_PATH = "config/console_identity.conf"
DEFAULT_DB_PATH = "data/console_identity.db"

# Directory defaults
DEFAULT_LDAP_PORT = 389
DEFAULT_LDAPS_PORT = 636
DEFAULT_CONNECT_TIMEOUT = 10.0  # seconds to establish the transport
DEFAULT_OPERATION_TIMEOUT = 30.0  # seconds to wait for any single response
DEFAULT_PAGE_SIZE = 500
DEFAULT_BIND_FORMATS = ("search", "upn", "down_level", "rdn")
DEFAULT_NON_HUMAN_OBJECT_CLASSES = ("computer",)

# Auth defaults
DEFAULT_BCRYPT_ROUNDS = 12
TOKEN_VALIDITY_HOURS = 24
DEFAULT_TOKEN_ISSUER = "console-identity"

# Keys that may only come from the environment
SECRET_KEYS = {
    (SECTION_AUTH, "token_secret"): ENV_TOKEN_SECRET,
    (SECTION_DIRECTORY, "bind_password"): ENV_DIRECTORY_BIND_PASSWORD,
}

DEFAULTS = {
    SECTION_DATABASE: {
        "path": DEFAULT_DB_PATH,
    },
    SECTION_AUTH: {
        "bcrypt_rounds": str(DEFAULT_BCRYPT_ROUNDS),
        "token_issuer": DEFAULT_TOKEN_ISSUER,
    },
    SECTION_LOGGING: {
        "level": "INFO",
    },
}
