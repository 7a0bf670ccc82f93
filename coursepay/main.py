"""
CoursePay - Main Entry Point
Runs the payment HTTP service
"""
import asyncio
import sys
from typing import Optional

import structlog
from aiogram import Bot
from aiogram.client.default import DefaultBotProperties
from aiogram.enums import ParseMode
from aiohttp import web

from coursepay.config import Config, config
from coursepay.handlers import create_app
from coursepay.logging import configure_logging
from coursepay.services.database import PaymentStore
from coursepay.services.notifications import EnrollmentAlertNotifier
from coursepay.services.payment import PaymentService
from coursepay.services.reconciliation import ReconciliationCoordinator
from coursepay.services.scheduler import ExpirySweepScheduler
from coursepay.services.vnpay import VNPayClient

logger = structlog.get_logger(__name__)


def build_notifier(cfg: Config) -> Optional[EnrollmentAlertNotifier]:
    """Operator alerts are optional; both token and admin ids are needed"""
    if not cfg.telegram_bot_token or not cfg.admin_chat_ids:
        logger.info("enrollment_alerts_disabled")
        return None
    bot = Bot(
        token=cfg.telegram_bot_token,
        default=DefaultBotProperties(parse_mode=ParseMode.HTML),
    )
    return EnrollmentAlertNotifier(bot, cfg.admin_chat_ids)


async def main() -> None:
    """Initialize and run the service"""
    configure_logging(
        level=config.log_level,
        log_format=config.log_format,
        log_file=config.log_file,
        retention_days=config.log_retention_days,
        secrets=[config.vnpay_hash_secret, config.telegram_bot_token],
    )

    # Validate configuration
    try:
        config.validate()
    except ValueError as e:
        logger.error("configuration_error", error=str(e))
        sys.exit(1)

    logger.info("starting_coursepay", payment_enabled=config.payment_enabled)

    store = PaymentStore(config.database_url)
    await store.connect()

    client = VNPayClient(config.gateway_settings())
    notifier = build_notifier(config)
    coordinator = ReconciliationCoordinator(client, store, notifier=notifier)
    service = PaymentService(
        store=store,
        client=client,
        coordinator=coordinator,
        enabled=config.payment_enabled,
        currency=config.payment_currency,
    )

    sweep_scheduler: Optional[ExpirySweepScheduler] = None
    runner = web.AppRunner(create_app(service))
    try:
        await runner.setup()
        site = web.TCPSite(runner, config.host, config.port)
        await site.start()
        logger.info("http_server_started", host=config.host, port=config.port)

        if config.expiry_sweep_minutes:
            sweep_scheduler = ExpirySweepScheduler(
                service,
                interval_minutes=config.expiry_sweep_minutes,
                timezone=config.vnpay_timezone,
            )
            sweep_scheduler.start()

        await asyncio.Event().wait()
    finally:
        # Cleanup
        if sweep_scheduler:
            sweep_scheduler.shutdown(wait=False)
        await runner.cleanup()
        await coordinator.wait_for_alerts()
        await client.close()
        if notifier:
            await notifier.close()
        await store.close()
        logger.info("coursepay_stopped")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
