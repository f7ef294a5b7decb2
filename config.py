"""Runtime configuration read from environment variables.

Variables (all optional):

* ``DEFAULT_CONSULT_MINUTES`` – starting consult estimate, default 8.
* ``CONSULT_POLICY`` – ``exclusive`` (one consult at a time, default) or
  ``permissive`` (a second consult is allowed with a warning).
* ``ALLOW_REOPEN`` – allow putting a finished consult back in progress.
* ``DATABASE_URL`` – save snapshots through SQLModel, e.g. ``sqlite:///queue.db``.
* ``REDIS_URL`` – publish every queue view to Redis.
* ``ADMIN_PASS`` – passcode required by the mutating HTTP endpoints.
* ``CLINIC_NAME``, ``LOG_LEVEL``.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

from pydantic import BaseModel, Field

from models import ConsultPolicy

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class EngineSettings(BaseModel):
    default_consult_minutes: int = Field(default=8, ge=1)
    consult_policy: ConsultPolicy = ConsultPolicy.exclusive
    allow_reopen: bool = False
    database_url: Optional[str] = None
    redis_url: Optional[str] = None
    admin_passcode: Optional[str] = None
    clinic_name: str = "Clinic Queue"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            default_consult_minutes=int(os.getenv("DEFAULT_CONSULT_MINUTES", "8")),
            consult_policy=os.getenv("CONSULT_POLICY", ConsultPolicy.exclusive.value),
            allow_reopen=_env_flag("ALLOW_REOPEN"),
            database_url=os.getenv("DATABASE_URL") or None,
            redis_url=os.getenv("REDIS_URL") or None,
            admin_passcode=os.getenv("ADMIN_PASS") or None,
            clinic_name=os.getenv("CLINIC_NAME", "Clinic Queue"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )
