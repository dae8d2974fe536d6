"""Request models for the StudioSync HTTP API.

Field names on the wire are camelCase; handlers use the snake_case
attributes.
"""

from __future__ import annotations

from datetime import date

from pydantic import BaseModel, ConfigDict, Field


class StartImportRequest(BaseModel):
    """Request to start a new import job.

    Used by: POST /api/imports/start
    """

    model_config = ConfigDict(populate_by_name=True)

    data_types: list[str] = Field(alias="dataTypes")
    start_date: date = Field(alias="startDate")
    end_date: date = Field(alias="endDate")


class ScheduledImportRequest(BaseModel):
    """Create or update the organization's scheduled import.

    Used by: POST /api/scheduled-imports
    """

    model_config = ConfigDict(populate_by_name=True)

    enabled: bool
    cron_expression: str | None = Field(default=None, alias="cronExpression")
    data_types: str | None = Field(default=None, alias="dataTypes")
    days_to_import: int | None = Field(default=None, alias="daysToImport")
