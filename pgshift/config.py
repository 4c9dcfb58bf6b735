"""
Configuration management for pgshift.
"""

from functools import lru_cache
from typing import List, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def parse_csv(raw: Optional[str]) -> List[str]:
    """
    Parse a comma-separated setting into a list.

    - Strips whitespace from each entry
    - Filters out empty strings
    - Returns empty list if input is empty/whitespace

    Examples:
        "pgsodium,pg_net" -> ["pgsodium", "pg_net"]
        "  anon , service_role  " -> ["anon", "service_role"]
        "" -> []
    """
    if not raw or not raw.strip():
        return []
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        populate_by_name=True,
        extra="ignore",
    )

    # Endpoints
    source_db_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("SOURCE_DB_URL", "SUPABASE_DB_URL", "source_db_url"),
    )
    target_db_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("TARGET_DB_URL", "AWS_RDS_URL", "target_db_url"),
    )

    # Workspace
    workspace_root: str = Field(default="./migration-workspace")

    # Migration scope
    migrate_schema: str = Field(default="public")
    platform_roles: str = Field(
        default=(
            "supabase_admin,supabase_auth_admin,supabase_storage_admin,"
            "supabase_realtime_admin,authenticated,anon,service_role,dashboard_user"
        ),
        description="Comma-separated source-platform roles stripped from the schema.",
    )
    unavailable_extensions: str = Field(
        default="pgsodium,pg_graphql,pg_net,supautils",
        description="Comma-separated extensions the target platform cannot install.",
    )
    supported_extensions: str = Field(
        default="",
        description="Optional comma-separated allow-list of target extensions. Empty = no allow-list.",
    )

    # Validation
    validation_workers: int = Field(default=4)

    # Client tooling
    pg_dump_bin: str = Field(default="pg_dump")
    psql_bin: str = Field(default="psql")

    # Readiness audit
    project_root: Optional[str] = Field(default=None)

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")

    @property
    def platform_role_list(self) -> List[str]:
        return parse_csv(self.platform_roles)

    @property
    def unavailable_extension_list(self) -> List[str]:
        return parse_csv(self.unavailable_extensions)

    @property
    def supported_extension_list(self) -> List[str]:
        return parse_csv(self.supported_extensions)


@lru_cache
def get_settings() -> Settings:
    """Get application settings."""
    return Settings()
