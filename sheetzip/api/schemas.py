"""Pydantic schemas for requests and transform backend payloads."""

from __future__ import annotations

import math
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

VIEWPORT_HEIGHT = 900
DEFAULT_MIN_WIDTH = 980
DEFAULT_DEVICE_SCALE_FACTOR = 1.8
DEFAULT_WAIT_MS = 60


class PageDescriptor(BaseModel):
    """Single renderable page returned by ``buildPages``."""

    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    html: str = ""

    @field_validator("name", mode="before")
    @classmethod
    def _blank_name_is_missing(cls, value: Any) -> Any:
        if value is None:
            return None
        value = str(value).strip()
        return value or None


class PageBatch(BaseModel):
    """One ``buildPages`` answer: a slice of pages plus the cursor state."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    pages: List[PageDescriptor] = Field(default_factory=list)
    done: bool = False
    next_offset: Optional[int] = Field(default=None, alias="nextOffset")

    @field_validator("pages", mode="before")
    @classmethod
    def _null_pages_are_empty(cls, value: Any) -> Any:
        return value or []


class RenderOptions(BaseModel):
    """Viewport and timing derived from the caller's ``cfg`` object."""

    width: int = DEFAULT_MIN_WIDTH
    height: int = VIEWPORT_HEIGHT
    device_scale_factor: float = DEFAULT_DEVICE_SCALE_FACTOR
    wait_ms: int = DEFAULT_WAIT_MS

    @classmethod
    def from_cfg(cls, cfg: Optional[Dict[str, Any]]) -> "RenderOptions":
        """Build options from ``cfg``; falsy or unparsable values use defaults."""

        cfg = cfg or {}
        return cls(
            width=int(_number(cfg.get("minWidth"), DEFAULT_MIN_WIDTH)),
            height=VIEWPORT_HEIGHT,
            device_scale_factor=float(
                _number(cfg.get("deviceScaleFactor"), DEFAULT_DEVICE_SCALE_FACTOR)
            ),
            wait_ms=int(_number(cfg.get("waitMs"), DEFAULT_WAIT_MS)),
        )


def _number(value: Any, default: float) -> float:
    if not value:
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number) or number <= 0:
        return default
    return number


class RenderRequest(BaseModel):
    """JSON body accepted by ``POST /api/render``."""

    model_config = ConfigDict(extra="ignore")

    outputSpreadsheetId: str = ""
    selectedHeaders: Optional[List[str]] = None
    cfg: Dict[str, Any] = Field(default_factory=dict)
    zipName: Optional[str] = None
    output_url: Optional[str] = None

    @field_validator("outputSpreadsheetId", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value).strip()

    @field_validator("selectedHeaders", mode="before")
    @classmethod
    def _list_or_none(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return None
        return [str(item) for item in value]

    @field_validator("cfg", mode="before")
    @classmethod
    def _cfg_object(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else {}

    @field_validator("zipName", "output_url", mode="before")
    @classmethod
    def _text_or_none(cls, value: Any) -> Any:
        if not value or isinstance(value, (dict, list)):
            return None
        return str(value)


class PrepareRequest(BaseModel):
    """Upload forwarded to the backend's ``prepare`` action."""

    file_bytes: bytes
    file_name: str = "upload.xlsx"
    header_row: int = Field(default=6, ge=1)
    sheet_prefix: str = "CT"
    output_name: str = "output_tong_hop"


__all__ = [
    "DEFAULT_DEVICE_SCALE_FACTOR",
    "DEFAULT_MIN_WIDTH",
    "DEFAULT_WAIT_MS",
    "PageBatch",
    "PageDescriptor",
    "PrepareRequest",
    "RenderOptions",
    "RenderRequest",
    "VIEWPORT_HEIGHT",
]
