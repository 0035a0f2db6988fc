"""
sccmkit Configuration Module

Provides centralized configuration management with:
- Environment variable loading (SCCM_ prefix)
- Type validation via Pydantic
- Development overrides via .env file

Environment Variable Naming Convention:
- All variables use the SCCM_ prefix (e.g., SCCM_MANAGEMENT_POINT, SCCM_SITE_CODE)
- Command line options always take precedence over the environment
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional


class SccmSettings(BaseSettings):
    """
    sccmkit settings.

    Loads from environment variables with the SCCM_ prefix.

    Usage:
        from sccmkit.utils.config import settings

        transport = Transport(settings=settings)
    """
    model_config = SettingsConfigDict(
        env_prefix='SCCM_',
        env_file='.env',
        env_file_encoding='utf-8',
        extra='ignore'
    )

    # ==========================================================================
    # GENERAL
    # ==========================================================================
    LOG_LEVEL: str = Field(default="INFO", description="Logging level: DEBUG, INFO, WARNING, ERROR")
    LOG_FORMAT: str = Field(default="text", description="Log output format: text or json")

    # ==========================================================================
    # SITE
    # ==========================================================================
    MANAGEMENT_POINT: Optional[str] = Field(default=None, description="Management point host name or address")
    SITE_CODE: Optional[str] = Field(default=None, description="Three character site code")

    # ==========================================================================
    # NETWORKING
    # ==========================================================================
    USE_HTTPS: bool = Field(default=False, description="Contact the management point over HTTPS")
    VERIFY_TLS: bool = Field(default=False, description="Verify the management point TLS certificate")
    HTTP_TIMEOUT_SECONDS: float = Field(default=60.0, description="Per-request timeout for management point calls")
    USER_AGENT: str = Field(default="ConfigMgr Messaging HTTP Sender", description="User-Agent sent to the management point")

    # ==========================================================================
    # CLIENT EMULATION
    # ==========================================================================
    CLIENT_VERSION: str = Field(default="5.00.8325.0000", description="Client version reported in messages")
    AGENT_IDENTITY: str = Field(default="CCMSetup.exe", description="Agent identity reported during registration")
    LOCALE_ID: int = Field(default=2057, description="Locale ID reported in discovery properties")
    CODE_PAGE: int = Field(default=850, description="Code page reported in discovery records")
    CERTIFICATE_COMMON_NAME: str = Field(default="ConfigMgr Client", description="Subject CN of generated certificates")
    RSA_KEY_SIZE: int = Field(default=2048, description="RSA modulus size for generated identities")
    CERTIFICATE_VALIDITY_DAYS: int = Field(default=365, description="Validity period of generated certificates")
    REGISTRATION_WAIT_SECONDS: float = Field(default=180.0, description="Pause after registering before requesting policy")

    # ==========================================================================
    # MEMBERSHIP
    # ==========================================================================
    MEMBERSHIP_WAIT_SECONDS: float = Field(default=15.0, description="Default membership convergence timeout")
    MEMBERSHIP_POLL_INTERVAL_SECONDS: float = Field(default=1.0, description="Interval between membership polls")

    # ==========================================================================
    # OBJECT QUERY (WS-MANAGEMENT)
    # ==========================================================================
    WSMAN_PORT: int = Field(default=5985, description="WinRM port of the SMS provider")
    WSMAN_USE_HTTPS: bool = Field(default=False, description="Use HTTPS for WinRM")
    WSMAN_MAX_ELEMENTS: int = Field(default=32000, description="Maximum items per enumeration pull")

    # ==========================================================================
    # LOCAL PATHS
    # ==========================================================================
    WMI_REPOSITORY_PATH: str = Field(
        default=r"C:\Windows\System32\wbem\Repository\OBJECTS.DATA",
        description="CIM repository scanned by the disk strategy",
    )
    SYSTEM_MASTERKEY_DIR: str = Field(
        default=r"C:\Windows\System32\Microsoft\Protect\S-1-5-18\User",
        description="Directory holding SYSTEM DPAPI master key files",
    )

    def base_url(self, host: str, port: Optional[int] = None) -> str:
        """Management point base URL for the configured scheme."""
        scheme = "https" if self.USE_HTTPS else "http"
        return f"{scheme}://{host}:{port}" if port else f"{scheme}://{host}"


# Global settings instance
settings = SccmSettings()
