"""Shared Pydantic base models and utilities."""

from __future__ import annotations

import random
import string
import time
from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_log_id() -> str:
    """Return a short sortable id: ``<epoch-ms>-<7 random base36 chars>``."""
    alphabet = string.digits + string.ascii_lowercase
    suffix = "".join(random.choices(alphabet, k=7))
    return f"{int(time.time() * 1000)}-{suffix}"


class ContexterBase(BaseModel):
    """Base model with shared config for all Contexter schemas."""

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
    )
