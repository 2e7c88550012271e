"""
BTC Signal Desk - Entry point

Runs the recalculation loop for all configured assets.
"""

import asyncio
import logging

from config import settings
from desk import TradingDesk

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


async def main():
    """Start the desk and run until interrupted."""
    logger.info("=" * 50)
    logger.info("BTC SIGNAL DESK")
    logger.info("=" * 50)
    logger.info(f"Assets: {', '.join(settings.assets)} | Timeframes: {', '.join(settings.timeframes)}")

    desk = TradingDesk()
    if not desk.liquidation_source.is_configured:
        logger.info("Liquidation proxy not configured, using ATR liquidation zones")

    try:
        await desk.run_forever()
    finally:
        await desk.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Desk stopped")
