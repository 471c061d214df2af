"""Static configuration for wabridge.

Non-secret settings (ports, URLs, allowlist, logging) live in a single JSON
file for quick edits without touching Python. Secrets come from the
environment (.env is loaded with python-dotenv).
"""

import json
import os

from dotenv import load_dotenv

load_dotenv()

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

CONFIG_PATH = os.getenv("WABRIDGE_CONFIG", os.path.join(PROJECT_ROOT, "config.json"))


def _load_json_config() -> dict:
    """Load config.json; a missing file means every default applies."""

    if not os.path.exists(CONFIG_PATH):
        return {}

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _split_services(raw: str) -> list[str]:
    return [service.strip() for service in raw.split(",") if service.strip()]


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# Where to store the SQLite database (rule set, fires, cooldowns, messages).
DB_PATH = _CONFIG.get("db_path") or os.path.join(PROJECT_ROOT, "wabridge.db")
if not os.path.isabs(DB_PATH):
    DB_PATH = os.path.join(PROJECT_ROOT, DB_PATH)

# Webhook listener.
_gateway = _CONFIG.get("gateway", {})
GATEWAY_HOST = _gateway.get("host", "0.0.0.0")
GATEWAY_PORT = int(os.getenv("GATEWAY_PORT", _gateway.get("port", 8099)))

# Home Assistant. Only allowlisted services can be called by rules;
# HA_ALLOWED_SERVICES in the environment wins over the config file.
_home_assistant = _CONFIG.get("home_assistant", {})
HA_URL = os.getenv("HA_URL", _home_assistant.get("url", "http://supervisor/core"))
HA_TOKEN = os.getenv("HA_TOKEN") or os.getenv("SUPERVISOR_TOKEN", "")
_allowed_env = os.getenv("HA_ALLOWED_SERVICES")
if _allowed_env is not None:
    HA_ALLOWED_SERVICES = _split_services(_allowed_env)
else:
    HA_ALLOWED_SERVICES = list(_home_assistant.get("allowed_services", ["script.turn_on", "automation.trigger"]))

# Evolution API (WhatsApp).
_evolution = _CONFIG.get("evolution", {})
EVOLUTION_URL = os.getenv("EVOLUTION_URL", _evolution.get("url", "http://localhost:8080"))
EVOLUTION_API_KEY = os.getenv("EVOLUTION_API_KEY") or os.getenv("AUTHENTICATION_API_KEY", "")
INSTANCE_NAME = os.getenv("INSTANCE_NAME", _evolution.get("instance_name", "Home"))

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
