# src/sentinel_deploy/settings.py
from typing import Optional, Dict, List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


VALID_SKUS = ["Free", "Standalone", "PerNode", "PerGB2018"]
VALID_LOCK_TYPES = ["ReadOnly", "CanNotDelete"]

DEFAULT_PROVIDERS = [
    "Microsoft.OperationalInsights",
    "Microsoft.SecurityInsights",
    "Microsoft.OperationsManagement",
    "Microsoft.Security",
    "Microsoft.Automation",
]


class Settings(BaseSettings):
    """
    Single source of truth for all deployment settings.

    Configuration precedence:
    1. Environment variables (highest priority)
    2. .env file (if exists)
    3. Default values in this class (lowest priority)

    Usage:
        from sentinel_deploy.settings import get_settings
        settings = get_settings()
        retention = settings.data_retention_days
    """

    # Application Settings
    app_name: str = Field(
        default="sentinel-deploy",
        description="Application name"
    )

    # Azure CLI
    az_cli_path: str = Field(
        default="az",
        alias="AZURE_CLI_PATH",
        description="Path to the Azure CLI executable"
    )

    az_max_retries: int = Field(
        default=7,
        description="Attempts for a throttled Azure CLI call"
    )

    default_location: Optional[str] = Field(
        default=None,
        alias="AZURE_DEFAULTS_LOCATION",
        description="Region used when none is given on the command line"
    )

    billing_scope: Optional[str] = Field(
        default=None,
        alias="AZURE_BILLING_SCOPE",
        description="Billing scope used to create a subscription alias"
    )

    # Resource Group Configuration
    resource_group_description: str = Field(
        default="Resource group for security monitoring, Log Analytics workspace, and Microsoft Sentinel",
        description="Description tag for the resource group"
    )

    enable_resource_group_lock: bool = Field(
        default=True,
        description="Apply a management lock to the resource group"
    )

    resource_group_lock_type: str = Field(
        default="CanNotDelete",
        description="Lock level: ReadOnly or CanNotDelete"
    )

    # Log Analytics Configuration
    log_analytics_sku: str = Field(
        default="PerGB2018",
        description="Log Analytics pricing tier"
    )

    data_retention_days: int = Field(
        default=90,
        description="Workspace data retention in days"
    )

    # Resource provider registration
    required_providers: List[str] = Field(
        default_factory=lambda: list(DEFAULT_PROVIDERS),
        description="Resource provider namespaces registered before deployment"
    )

    provider_poll_attempts: int = Field(
        default=30,
        description="Number of registration status checks per provider"
    )

    provider_poll_interval: float = Field(
        default=10.0,
        description="Seconds between registration status checks"
    )

    # State tracking
    state_file: str = Field(
        default=".deployment_state.json",
        description="Local deployment state file"
    )

    portal_url: str = Field(
        default="https://portal.azure.com",
        description="Azure portal base URL used for printed links"
    )

    # Environment context
    cloudshell: Optional[str] = Field(
        default=None,
        alias="CLOUDSHELL",
        description="Set by Azure Cloud Shell"
    )

    owner: Optional[str] = Field(
        default=None,
        alias="USER",
        description="Owner tag value"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    @field_validator('log_analytics_sku')
    @classmethod
    def validate_sku(cls, v):
        """Match the SKU case-insensitively against the known tiers."""
        for sku in VALID_SKUS:
            if v.lower() == sku.lower():
                return sku
        raise ValueError(f"Invalid log_analytics_sku: {v}. Must be one of {VALID_SKUS}")

    @field_validator('resource_group_lock_type')
    @classmethod
    def validate_lock_type(cls, v):
        for lock_type in VALID_LOCK_TYPES:
            if v.lower() == lock_type.lower():
                return lock_type
        raise ValueError(f"Invalid resource_group_lock_type: {v}. Must be one of {VALID_LOCK_TYPES}")

    @field_validator('log_level')
    @classmethod
    def normalize_log_level(cls, v):
        return v.upper() if v else "INFO"

    @property
    def in_cloud_shell(self) -> bool:
        """True when running inside Azure Cloud Shell."""
        return bool(self.cloudshell)

    def default_tags(self) -> Dict[str, str]:
        """Tags applied to the resource group."""
        return {
            "Environment": "Security",
            "Purpose": "Log Analytics and Sentinel",
            "CreatedBy": "Azure CLI Script",
            "Owner": self.owner or "unknown",
            "Department": "IT Security",
        }

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=(".env", ".env.sentinel"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    This ensures we only create one Settings instance per process.
    """
    return Settings()
