# ================================================================
# File     : config.py
# Purpose  : Configuration management for PimPoodle
# Notes    : Handles initial creation, loading, and saving of config
# ================================================================

import copy
import pathlib

from core.utils import fncPrintMessage, fncEnsureFolder, fncReadJSON, fncWriteJSON, fncLoadEnv

DEFAULT_HOME = pathlib.Path.home() / ".pimpoodle"

# Microsoft Graph PowerShell public client; works in every tenant without
# an app registration of our own.
DEFAULT_CLIENT_ID = "14d82eec-204b-4c2f-b7e8-296a70dab67e"


# ================================================================
# Function: fncDefaultConfig
# Purpose : Return a default configuration dictionary
# Notes   : Called when config file does not exist
# ================================================================
def fncDefaultConfig() -> dict:
    return {
        "version": "1.0",
        "pimpoodle_home": str(DEFAULT_HOME),
        "debug": False,
        "entra": {
            "tenant_id": "organizations",
            "client_id": DEFAULT_CLIENT_ID,
            "authority": "https://login.microsoftonline.com",
            "last_account": "",
        },
        "cache": {
            "role_cache_ttl_seconds": 120,
        },
        "activation": {
            "default_duration": {"hours": 8, "minutes": 0},
            "ticket_system": "",
        },
        "auth": {
            "interactive_timeout_seconds": 120,
            "auth_context_token_max_minutes": 45,
        },
        "refresh": {
            "attempts": 3,
            "initial_delay_seconds": 2.0,
            "backoff": 2.0,
        },
        "fetch": {
            "parallel": True,
            "include_groups": True,
            "include_azure_resources": False,
        },
    }


# ================================================================
# Function: fncMergeDefaults
# Purpose : Fill keys missing from a loaded config with defaults
# Notes   : Older config files keep working after new keys land
# ================================================================
def fncMergeDefaults(cfg: dict, defaults: dict = None) -> dict:
    defaults = defaults if defaults is not None else fncDefaultConfig()
    out = copy.deepcopy(defaults)
    for key, val in (cfg or {}).items():
        if isinstance(val, dict) and isinstance(out.get(key), dict):
            out[key] = fncMergeDefaults(val, out[key])
        else:
            out[key] = val
    return out


# ================================================================
# Function: fncInitConfig
# Purpose : Create or load configuration file
# Notes   : Ensures base folder exists; returns full config dict
# ================================================================
def fncInitConfig(config_path: str = None) -> dict:
    path = pathlib.Path(config_path or DEFAULT_HOME / "config.json")

    fncEnsureFolder(path.parent)

    if not path.exists():
        fncPrintMessage(f"No config found at {path}. Creating default...", "warn")
        cfg = fncDefaultConfig()
        fncWriteJSON(str(path), cfg)
        return fncApplyEnvOverrides(cfg)
    return fncLoadConfig(str(path))


# ================================================================
# Function: fncLoadConfig
# Purpose : Load configuration file and apply environment overrides
# ================================================================
def fncLoadConfig(config_path: str) -> dict:
    cfg = fncMergeDefaults(fncReadJSON(config_path))
    cfg = fncApplyEnvOverrides(cfg)
    fncPrintMessage(f"Loaded configuration from {config_path}", "debug")
    return cfg


# ================================================================
# Function: fncApplyEnvOverrides
# Purpose : Environment variables win over the file
# Notes   : PIMPOODLE_TENANT_ID, PIMPOODLE_CLIENT_ID
# ================================================================
def fncApplyEnvOverrides(cfg: dict) -> dict:
    entra = cfg.setdefault("entra", {})
    entra["tenant_id"] = fncLoadEnv("PIMPOODLE_TENANT_ID", entra.get("tenant_id"))
    entra["client_id"] = fncLoadEnv("PIMPOODLE_CLIENT_ID", entra.get("client_id"))
    return cfg


# ================================================================
# Function: fncSaveConfig
# Purpose : Save configuration file safely
# Notes   : Used to persist last account / ticket system
# ================================================================
def fncSaveConfig(cfg: dict, config_path: str = None) -> None:
    path = pathlib.Path(config_path or DEFAULT_HOME / "config.json")
    fncEnsureFolder(path.parent)
    fncWriteJSON(str(path), cfg)
    fncPrintMessage(f"Configuration saved → {path}", "debug")


# ================================================================
# Function: fncUpdateConfigField
# Purpose : Update a specific nested key in the config
# Notes   : Example: fncUpdateConfigField(cfg, "entra.last_account", "a@b.com")
# ================================================================
def fncUpdateConfigField(cfg: dict, path: str, value) -> dict:
    parts = path.split(".")
    ref = cfg
    for key in parts[:-1]:
        ref = ref.setdefault(key, {})
    ref[parts[-1]] = value
    fncPrintMessage(f"Updated config field: {path} = {value}", "debug")
    return cfg


# ================================================================
# Function: fncGetSection
# Purpose : Return a config block by name
# ================================================================
def fncGetSection(cfg: dict, section: str) -> dict:
    block = cfg.get(section)
    if not isinstance(block, dict):
        fncPrintMessage(f"Config section not found: {section}", "warn")
        return {}
    return block


# ================================================================
# Function: fncApplyCliOverrides
# Purpose : Apply command-line flags to the loaded config
# Notes   : Handles --debug and --tenant
# ================================================================
def fncApplyCliOverrides(cfg: dict, args) -> dict:
    if getattr(args, "debug", None):
        cfg["debug"] = True
    tenant = getattr(args, "tenant", None)
    if tenant:
        cfg.setdefault("entra", {})["tenant_id"] = tenant
    return cfg


# ================================================================
# Function: fncIsDebug
# Purpose : Return whether debug mode is enabled in config
# ================================================================
def fncIsDebug(cfg: dict) -> bool:
    return bool(cfg.get("debug", False))
