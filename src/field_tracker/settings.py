"""Settings for field-tracker.

Connection and behaviour settings use the FIELD_TRACKER_ prefix and cover:
- MongoDB connection used by the ledger API application
- Naming of the shadow-info sibling fields
- Index management and drain tuning
- Logging output
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class TrackerSettings(BaseSettings):
    """Settings for field-tracker.

    Per-field tracking options are declared on the schema; these settings
    only cover process-wide concerns.

    Environment variable prefix: FIELD_TRACKER_
    """

    service_name: str = "field-tracker"

    # -------------------------------------------------------------------------
    # MongoDB connection
    # -------------------------------------------------------------------------

    mongo_url: str = Field(
        default="mongodb://localhost:27017",
        description="MongoDB connection URL used by the ledger API application.",
    )
    database_name: str = Field(
        default="field_tracker",
        description="Database holding tracked collections and historize ledgers.",
    )

    # -------------------------------------------------------------------------
    # Shadow-info layout
    # -------------------------------------------------------------------------

    info_suffix: str = Field(
        default="Info",
        description="Suffix appended to a tracked path to build its shadow-info sibling path.",
    )

    # -------------------------------------------------------------------------
    # Indexes and drain
    # -------------------------------------------------------------------------

    ensure_indexes_on_startup: bool = Field(
        default=True,
        description="Create shadow-info and ledger indexes when the API application starts.",
    )
    drain_batch_size: int = Field(
        default=500,
        description="Cursor batch size of the change-notification read.",
    )

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------

    log_level: str = Field(default="INFO", description="Root log level.")
    json_logs: bool = Field(
        default=False,
        description="Render log events as JSON lines instead of the console renderer.",
    )

    model_config = SettingsConfigDict(env_prefix="FIELD_TRACKER_")
