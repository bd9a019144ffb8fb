import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import toml


@dataclass
class APIKeyCredentials:
    key_id: str
    issuer_id: str
    private_key: str
    enterprise: bool = False


@dataclass
class AppleIDSettings:
    apple_id: str
    team_id: str
    session_dir: Path


@dataclass
class SigningSettings:
    certificates_dir: Optional[Path] = None
    min_profile_validity_days: int = 0
    fallback_to_local_assets: bool = False
    verbose: bool = False
    register_test_devices: bool = True


def get_config_path() -> Path:
    """Return the path to the configuration file."""
    env_path = os.environ.get("AUTOSIGN_CONFIG")
    if env_path:
        return Path(env_path)
    return Path.home() / ".autosign" / "config.toml"


def load_config() -> Dict[str, Any]:
    """Load configuration from TOML file."""
    config_path = get_config_path()
    if not config_path.exists():
        return {}

    try:
        return toml.load(config_path)
    except (OSError, toml.TomlDecodeError) as e:
        raise ValueError(f"Failed to load config {config_path}: {e}") from e


def get_api_key_credentials(
    config: Optional[Dict[str, Any]] = None,
) -> Optional[APIKeyCredentials]:
    """Get App Store Connect API key credentials from environment or config."""
    config = load_config() if config is None else config
    api_config = config.get("api_key", {})

    key_id = os.environ.get("AUTOSIGN_API_KEY_ID") or api_config.get("key_id")
    issuer_id = os.environ.get("AUTOSIGN_API_ISSUER_ID") or api_config.get("issuer_id")
    private_key = os.environ.get("AUTOSIGN_API_PRIVATE_KEY")
    key_path = os.environ.get("AUTOSIGN_API_PRIVATE_KEY_PATH") or api_config.get(
        "private_key_path"
    )

    if not key_id and not issuer_id and not private_key and not key_path:
        return None
    if not key_id or not issuer_id:
        raise ValueError(
            f"API key requires both key_id and issuer_id. Please check the [api_key] section of {get_config_path()}"
        )

    if not private_key:
        if not key_path:
            raise ValueError(
                f"API key private key not found. Please add private_key_path to the [api_key] section of {get_config_path()}"
            )
        try:
            private_key = Path(key_path).expanduser().read_text()
        except OSError as e:
            raise ValueError(f"Failed to read API private key {key_path}: {e}") from e

    return APIKeyCredentials(
        key_id=key_id,
        issuer_id=issuer_id,
        private_key=private_key,
        enterprise=bool(api_config.get("enterprise", False)),
    )


def get_session_dir(config: Optional[Dict[str, Any]] = None) -> Path:
    """Get session directory from config or environment."""
    # Check environment variable first
    env_session_dir = os.environ.get("AUTOSIGN_SESSION_DIR")
    if env_session_dir:
        return Path(env_session_dir)

    # Fall back to config
    config = load_config() if config is None else config
    session_dir = config.get("apple", {}).get("session_dir")
    if session_dir:
        return Path(session_dir).expanduser()

    # Default to ~/.autosign/sessions if not specified
    return Path.home() / ".autosign" / "sessions"


def get_apple_id_settings(config: Optional[Dict[str, Any]] = None) -> AppleIDSettings:
    """Get Apple ID session settings from config."""
    config = load_config() if config is None else config
    apple_config = config.get("apple", {})

    apple_id = apple_config.get("apple_id")
    if not apple_id:
        raise ValueError(
            f"Apple ID not found in config. Please add [apple] section with apple_id to {get_config_path()}"
        )
    team_id = os.environ.get("AUTOSIGN_TEAM_ID") or apple_config.get("team_id")
    if not team_id:
        raise ValueError(
            f"Team ID not found. Please add team_id to the [apple] section of {get_config_path()}"
        )

    return AppleIDSettings(
        apple_id=apple_id, team_id=team_id, session_dir=get_session_dir(config)
    )


def get_signing_settings(config: Optional[Dict[str, Any]] = None) -> SigningSettings:
    config = load_config() if config is None else config
    signing = config.get("signing", {})

    try:
        min_days = int(signing.get("min_profile_validity_days", 0))
    except (TypeError, ValueError) as e:
        raise ValueError(
            f"min_profile_validity_days must be a number in {get_config_path()}"
        ) from e
    if min_days < 0:
        raise ValueError(
            f"min_profile_validity_days can not be negative in {get_config_path()}"
        )

    certificates_dir = signing.get("certificates_dir")
    return SigningSettings(
        certificates_dir=Path(certificates_dir).expanduser() if certificates_dir else None,
        min_profile_validity_days=min_days,
        fallback_to_local_assets=bool(signing.get("fallback_to_local_assets", False)),
        verbose=bool(signing.get("verbose", False)),
        register_test_devices=bool(signing.get("register_test_devices", True)),
    )
