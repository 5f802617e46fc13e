import os
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

ONBOARDING_TARGETS = ("active", "pending")


class ConfigError(Exception):
    pass


@dataclass(frozen=True)
class Settings:
    mongo_url: str
    db_name: str
    firebase_cred_path: str = ""
    firebase_project_id: str = ""
    jwt_secret: str = "listener-portal-secret-key"
    jwt_algorithm: str = "HS256"
    jwt_expiry_days: int = 30
    phone_country_code: str = "+91"
    workflow_timeout: float = 8.0
    onboarding_complete_status: str = "active"
    pricing_policy_file: str = ""
    enable_triggers: bool = True


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def load_settings(environ: Optional[dict] = None) -> Settings:
    """Build Settings from the environment (after .env has been loaded)."""
    env = os.environ if environ is None else environ
    try:
        mongo_url = env['MONGO_URL']
        db_name = env['DB_NAME']
    except KeyError as e:
        raise ConfigError(f"Missing required setting {e.args[0]}")

    target = env.get('ONBOARDING_COMPLETE_STATUS', 'active').strip().lower()
    if target not in ONBOARDING_TARGETS:
        raise ConfigError(f"ONBOARDING_COMPLETE_STATUS must be one of {ONBOARDING_TARGETS}, got '{target}'")

    try:
        timeout = float(env.get('WORKFLOW_TIMEOUT_SECONDS', '8'))
        expiry_days = int(env.get('JWT_EXPIRY_DAYS', '30'))
    except ValueError as e:
        raise ConfigError(f"Invalid numeric setting: {e}")
    if timeout <= 0:
        raise ConfigError("WORKFLOW_TIMEOUT_SECONDS must be positive")

    return Settings(
        mongo_url=mongo_url,
        db_name=db_name,
        firebase_cred_path=env.get('FIREBASE_SERVICE_ACCOUNT_KEY', ''),
        firebase_project_id=env.get('FIREBASE_PROJECT_ID', ''),
        jwt_secret=env.get('JWT_SECRET', Settings.jwt_secret),
        jwt_algorithm=env.get('JWT_ALGORITHM', 'HS256'),
        jwt_expiry_days=expiry_days,
        phone_country_code=env.get('PHONE_COUNTRY_CODE', '+91'),
        workflow_timeout=timeout,
        onboarding_complete_status=target,
        pricing_policy_file=env.get('PRICING_POLICY_FILE', ''),
        enable_triggers=_flag(env.get('ENABLE_TRIGGERS', 'true')),
    )


def read_policy_file(path: str) -> dict:
    """Read a JSON pricing policy; a broken file is a startup failure."""
    try:
        with open(path) as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Could not read pricing policy '{path}': {e}")


def setup_logging(level: str = "INFO"):
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
