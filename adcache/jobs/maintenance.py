"""Period transition and data lifecycle jobs."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from dotenv import load_dotenv

from adcache.services import build_services

logger = logging.getLogger(__name__)


async def run_transition(*, warm: bool = True) -> dict[str, Any]:
    load_dotenv()
    services = build_services()
    try:
        results = await services.transition.handle_transition(warm=warm)
    finally:
        await services.aclose()
    return {name: result.to_dict() for name, result in results.items()}


async def run_archive() -> dict[str, Any]:
    load_dotenv()
    services = build_services()
    try:
        report = await services.lifecycle.archive_completed_periods()
    finally:
        await services.aclose()
    return report.to_dict()


async def run_cleanup() -> dict[str, Any]:
    load_dotenv()
    services = build_services()
    try:
        report = await services.lifecycle.cleanup_old_data()
    finally:
        await services.aclose()
    return report.to_dict()


async def run_status() -> dict[str, Any]:
    load_dotenv()
    services = build_services()
    try:
        status = await services.lifecycle.status()
    finally:
        await services.aclose()
    return status.to_dict()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(run_transition())
