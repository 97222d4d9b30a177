"""Shielded-token wallet sessions and transfer orchestration."""

import logging
from typing import Optional

from zkwallet.compliance import ComplianceRecord, ComplianceReport, ComplianceReportBuilder
from zkwallet.config import DepositScheme, NetworkConfig, NetworkKind, Settings, get_settings
from zkwallet.ephemeral import EphemeralAddressManager
from zkwallet.events import EventStream, InitState, OperationStage, StatusEvent
from zkwallet.models import TransferRequest, TxType
from zkwallet.orchestrator import TransferOrchestrator, TransferOutcome
from zkwallet.planner import TransactionPlanner
from zkwallet.session import SessionManager
from zkwallet.vault import EncryptedVault

__version__ = "0.1.0"


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Configure root logging from settings."""
    settings = settings or get_settings()
    log_level = logging.DEBUG if settings.debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


__all__ = [
    "ComplianceRecord",
    "ComplianceReport",
    "ComplianceReportBuilder",
    "DepositScheme",
    "EncryptedVault",
    "EphemeralAddressManager",
    "EventStream",
    "InitState",
    "NetworkConfig",
    "NetworkKind",
    "OperationStage",
    "SessionManager",
    "Settings",
    "StatusEvent",
    "TransactionPlanner",
    "TransferOrchestrator",
    "TransferOutcome",
    "TransferRequest",
    "TxType",
    "configure_logging",
    "get_settings",
]
