# Overview: Wires the service graph around one session, logger and config.

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.orm import Session

from .credit_service import CreditService
from .ledger_service import LedgerStore
from .notification_service import MessagingGateway, NotificationService, build_gateway
from .offer_service import BiddingService
from .order_state_machine import OrderStateMachine
from .routing_service import RoutingService
from .scoring_service import OfferScorer
from .stock_service import StockService
from .sweep_service import SweepService


@dataclass
class Services:
    ledger: LedgerStore
    credit: CreditService
    stock: StockService
    notifier: NotificationService
    orders: OrderStateMachine
    bidding: BiddingService
    routing: RoutingService
    sweeps: SweepService


def build_services(
    session: Session,
    config: dict,
    logger: logging.Logger | None = None,
    gateway: MessagingGateway | None = None,
) -> Services:
    logger = logger or logging.getLogger("tradeflow")
    retries = config.get("TX_RETRY_ATTEMPTS", 3)

    ledger = LedgerStore(session)
    credit = CreditService(
        session,
        ledger,
        logger=logger,
        default_terms_days=config.get("DEFAULT_CREDIT_TERMS_DAYS", 30),
        retry_attempts=retries,
    )
    stock = StockService(session, logger=logger, retry_attempts=retries)
    notifier = NotificationService(
        session,
        gateway or build_gateway(config.get("MESSAGING_GATEWAY", "log"), logger),
        logger=logger,
        max_attempts=config.get("NOTIFICATION_MAX_ATTEMPTS", 5),
    )
    orders = OrderStateMachine(
        session,
        credit,
        stock,
        notifier,
        logger=logger,
        bid_window_minutes=config.get("BID_WINDOW_MINUTES", 30),
        retry_attempts=retries,
    )
    bidding = BiddingService(
        session,
        orders,
        OfferScorer(config.get("SCORING_WEIGHTS")),
        notifier,
        logger=logger,
        retry_attempts=retries,
    )
    routing = RoutingService(
        session,
        orders,
        notifier,
        logger=logger,
        timeout_seconds=config.get("ROUTING_TIMEOUT_SECONDS", 600),
        max_candidates=config.get("ROUTING_MAX_CANDIDATES", 10),
        retry_attempts=retries,
    )
    sweeps = SweepService(session, bidding, routing, credit, notifier, logger=logger)
    return Services(
        ledger=ledger,
        credit=credit,
        stock=stock,
        notifier=notifier,
        orders=orders,
        bidding=bidding,
        routing=routing,
        sweeps=sweeps,
    )
