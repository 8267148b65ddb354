"""CLI entry point del servicio de ingesta."""

from __future__ import annotations

import argparse
import asyncio
import logging

from common.config import get_settings

from .service import WeatherIngestService

logger = logging.getLogger(__name__)


async def _run_headless(service: WeatherIngestService) -> None:
    await service.start()
    try:
        await asyncio.Event().wait()
    finally:
        await service.stop()


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
        handlers=[logging.StreamHandler()],
    )

    p = argparse.ArgumentParser(description="Weather station ingest service (MQTT → store → window)")
    p.add_argument("--host", default="0.0.0.0")
    p.add_argument("--port", type=int, default=8000)
    p.add_argument("--no-api", action="store_true", help="run the ingest pipeline without the HTTP API")
    args = p.parse_args()

    logger.info("Weather ingest service starting (station=%s)", settings.station_id)
    service = WeatherIngestService(settings)

    if args.no_api:
        try:
            asyncio.run(_run_headless(service))
        except KeyboardInterrupt:
            logger.info("Interrupted, exiting")
        return

    import uvicorn

    from .api import create_app

    uvicorn.run(create_app(service), host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    main()
