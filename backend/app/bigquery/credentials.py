"""
Application Default Credentials discovery.

Lookup order is fixed:
  1. GOOGLE_APPLICATION_CREDENTIALS, if the file it names exists
  2. the gcloud well-known file (%APPDATA%\\gcloud\\... on Windows,
     ~/.config/gcloud/... elsewhere)

No file at either location is not an error: the loader returns None and the
resolver moves on to the metadata server / gcloud. A file that exists but
cannot be read or parsed raises.
"""

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any

import structlog

from .types import AdcCredential

log = structlog.get_logger()

ADC_FILENAME = "application_default_credentials.json"


def well_known_adc_path() -> Path | None:
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        if not appdata:
            return None
        return Path(appdata) / "gcloud" / ADC_FILENAME
    return Path.home() / ".config" / "gcloud" / ADC_FILENAME


async def _file_exists(path: Path | None) -> bool:
    if path is None:
        return False
    return await asyncio.to_thread(path.is_file)


async def _read_json(path: Path) -> Any:
    raw = await asyncio.to_thread(path.read_text, encoding="utf-8")
    return json.loads(raw)


async def load_adc_credentials() -> AdcCredential | None:
    explicit = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS") or None
    if explicit and await _file_exists(Path(explicit)):
        log.debug("adc_file_found", source="google_application_credentials", path=explicit)
        return AdcCredential(
            source="google_application_credentials",
            file_path=explicit,
            json=await _read_json(Path(explicit)),
        )

    well_known = well_known_adc_path()
    if await _file_exists(well_known):
        log.debug("adc_file_found", source="application_default_credentials", path=str(well_known))
        return AdcCredential(
            source="application_default_credentials",
            file_path=str(well_known),
            json=await _read_json(well_known),
        )

    return None
