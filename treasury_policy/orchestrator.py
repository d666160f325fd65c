"""
Treasury Policy — Engine assembly and background sweep.

Central entrypoint that:
1. Configures structured logging
2. Loads the role registry, approval limits and governance parameters,
   refusing to start on any configuration defect
3. Wires the repository, audit trail and event sink into the engine and
   restores open proposals
4. Runs the periodic timelock / voting-period sweep
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path

import structlog

from treasury_policy.config import PolicySettings, settings
from treasury_policy.errors import ConfigurationError
from treasury_policy.finance.clock import Clock
from treasury_policy.governance.engine import ProposalEngine, WeightSource
from treasury_policy.governance.evaluator import ApprovalPolicyEvaluator
from treasury_policy.governance.parameters import (
    DEFAULT_GOVERNANCE_PARAMETERS,
    ParameterRegistry,
    load_parameter_set,
)
from treasury_policy.governance.roles import RolePermissionRegistry, role_registry
from treasury_policy.governance.schema import EventSink, Proposal
from treasury_policy.ledger.repository import SqlParameterVersionStore, SqlProposalRepository
from treasury_policy.ledger.service import AuditEntryType, AuditTrail

logger = logging.getLogger(__name__)


def configure_logging(config: PolicySettings = settings) -> None:
    """Configure structured logging for structlog and stdlib loggers alike."""
    level = logging.getLevelName(config.log_level.upper())
    renderer = (
        structlog.dev.ConsoleRenderer()
        if config.log_format != "json"
        else structlog.processors.JSONRenderer()
    )
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.dev.set_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Library modules log through stdlib logging; render them the same way.
    handler = logging.StreamHandler()
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[*shared_processors, structlog.processors.format_exc_info],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    ))
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)


def load_role_registry(path: str | None) -> RolePermissionRegistry:
    if not path:
        return role_registry
    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot load role configuration from {path}: {e}") from e
    return RolePermissionRegistry.from_mapping(payload)


def build_engine(
    config: PolicySettings = settings,
    clock: Clock | None = None,
    event_sink: EventSink | None = None,
    weight_source: WeightSource | None = None,
) -> ProposalEngine:
    """
    Assemble a ready-to-serve engine from configuration.

    Raises ConfigurationError on a missing role limit, a malformed or
    conflicting parameter set, or an incomplete role table.
    """
    registry = load_role_registry(config.roles_config_path)
    evaluator = ApprovalPolicyEvaluator(config.role_limits, registry=registry)

    repository = SqlProposalRepository(config.database_url)
    repository.initialize()
    store = SqlParameterVersionStore(config.database_url)
    store.initialize()
    audit = AuditTrail(config.database_url, clock=clock)
    audit.initialize()

    params = (
        load_parameter_set(config.governance_params_path)
        if config.governance_params_path
        else DEFAULT_GOVERNANCE_PARAMETERS
    )
    parameters = ParameterRegistry(store)
    if parameters.publish(params):
        audit.append(
            AuditEntryType.PARAMETERS_PUBLISHED,
            {"version": params.version, "parameters": params.document()},
        )

    engine = ProposalEngine(
        evaluator,
        parameters,
        repository=repository,
        audit=audit,
        event_sink=event_sink,
        clock=clock,
        weight_source=weight_source,
        emergency_enabled=config.emergency_proposals_enabled,
    )
    engine.restore()
    logger.info(
        "Policy engine ready: params=%s versions=%s emergency=%s",
        params.version, parameters.versions(), config.emergency_proposals_enabled,
    )
    return engine


async def sweep_once(
    engine: ProposalEngine, verify_chain: bool = False
) -> tuple[list[Proposal], tuple[bool, int, str] | None]:
    """
    Run one sweep, and optionally a full chain verification, off the event loop.

    Both calls block on the database; verification grows with the chain.
    """
    finished = await asyncio.to_thread(engine.sweep)
    if not verify_chain or engine.audit is None:
        return finished, None
    verification = await asyncio.to_thread(engine.audit.verify_chain)
    return finished, verification


async def main() -> None:
    """Build the engine and run the sweep loop."""
    configure_logging()
    log = structlog.get_logger()

    log.info(
        "treasury_policy.orchestrator.starting",
        database_url=settings.database_url,
        sweep_interval_seconds=settings.sweep_interval_seconds,
    )

    try:
        engine = build_engine(settings)
    except ConfigurationError as e:
        log.critical("treasury_policy.orchestrator.configuration_error", error=str(e))
        sys.exit(2)

    log.info("treasury_policy.orchestrator.running", open_proposals=len(engine.list_open()))

    sweeps = 0
    try:
        while True:
            verify = sweeps % settings.chain_verify_every_sweeps == 0
            finished, verification = await sweep_once(engine, verify_chain=verify)
            sweeps += 1
            if verification is not None and not verification[0]:
                log.critical(
                    "treasury_policy.orchestrator.integrity_failure",
                    message=verification[2],
                    entries=verification[1],
                )

            log.debug(
                "treasury_policy.orchestrator.heartbeat",
                closed=len(finished),
                pending_outbox=engine.pending_outbox,
                chain_verified=verification is not None,
            )

            await asyncio.sleep(settings.sweep_interval_seconds)

    except KeyboardInterrupt:
        log.info("treasury_policy.orchestrator.shutdown")
    except Exception as e:
        log.exception("treasury_policy.orchestrator.fatal_error", error=str(e))
        sys.exit(1)


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
