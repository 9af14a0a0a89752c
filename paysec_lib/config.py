"""Configuration management using Pydantic Settings."""

from typing import Optional

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from paysec_lib.errors import ConfigurationError


class Settings(BaseSettings):
    """Settings loaded from environment variables (or a ``.env`` file)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Two-way SSL / Basic auth
    visa_user_id: Optional[str] = None
    visa_password: Optional[SecretStr] = None
    visa_cert_path: Optional[str] = None
    visa_key_path: Optional[str] = None
    visa_ca_path: Optional[str] = None
    visa_base_url: str = "https://sandbox.api.visa.com"
    request_timeout: float = 30.0

    # X-Pay-Token API credential and signing keys
    xpay_api_key: Optional[SecretStr] = None
    xpay_private_key_path: str = "keys/xpay_private.pem"
    xpay_public_key_path: str = "keys/xpay_public.pem"
    xpay_counterparty_public_key_path: Optional[str] = None

    # Webhooks
    webhook_secret: Optional[SecretStr] = None
    webhook_tolerance_seconds: int = 300

    # Message level encryption
    encryption_key_id: Optional[str] = None
    jwe_encryption_cert_path: Optional[str] = None
    jwe_decryption_key_path: Optional[str] = None
    enable_message_encryption: bool = False
    allow_unencrypted_passthrough: bool = False

    # Application
    log_level: str = "INFO"

    def require(self, *field_names: str) -> None:
        """
        Raise ConfigurationError naming every listed field that is unset.

        Args:
            field_names: Attribute names on this settings object

        Raises:
            ConfigurationError: If any of the fields is None or empty
        """
        missing = []
        for name in field_names:
            value = getattr(self, name)
            if isinstance(value, SecretStr):
                value = value.get_secret_value()
            if not value:
                missing.append(name.upper())
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")
