"""Dependency Injection container for the health monitor.

Wires the monitor's components from a ``Config`` and an integration store
using the dependency-injector library.

Usage:
    # Production setup
    container = bootstrap(integration_store=store)
    monitor = container.monitor()
    monitor.run_sweep()

    # Test setup with a fake alert sender
    container = create_container(config=Config(), integration_store=store)
    container.alert_sender.override(providers.Object(fake_sender))
    monitor = container.monitor()
"""

from __future__ import annotations

from pathlib import Path

from dependency_injector import containers, providers

from healthwatch.alerts import AlertSender, LoggingAlertSender, WebhookAlertSender
from healthwatch.assessor import Assessor
from healthwatch.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from healthwatch.config import Config, load_config
from healthwatch.credentials import CredentialDecryptor
from healthwatch.health_state import HealthStateStore
from healthwatch.integrations import InMemoryIntegrationStore, IntegrationStore
from healthwatch.job_queue import InMemoryJobQueue
from healthwatch.logging import get_logger, setup_logging
from healthwatch.metrics import InMemoryMetricsSink, MetricsSink
from healthwatch.monitor import HealthMonitor
from healthwatch.response_handler import ResponseHandler
from healthwatch.scheduler import Scheduler
from healthwatch.types import Provider

logger = get_logger(__name__)


def create_state_store(config: Config) -> HealthStateStore:
    return HealthStateStore(base_interval_ms=config.check_interval_ms)


def create_breaker_registry(config: Config) -> CircuitBreakerRegistry:
    """Create the provider breaker registry with a breaker for every provider."""
    return CircuitBreakerRegistry(CircuitBreakerConfig.from_config(config), providers=Provider)


def create_alert_sender(config: Config) -> AlertSender:
    """Create the operator alert channel.

    Args:
        config: Application configuration.

    Returns:
        A ``WebhookAlertSender`` if a webhook URL is configured, otherwise a
        ``LoggingAlertSender``.
    """
    if config.webhook_alerts_configured:
        return WebhookAlertSender(config.alert_webhook_url, timeout=config.alert_timeout)
    logger.info("[CONTAINER] No alert webhook configured, alerts will only be logged")
    return LoggingAlertSender()


def create_decryptor(config: Config) -> CredentialDecryptor | None:
    if not config.encryption_key:
        logger.warning(
            "[CONTAINER] HEALTHWATCH_ENCRYPTION_KEY is not set, "
            "integrations with stored credentials will fail their checks"
        )
        return None
    return CredentialDecryptor(config.encryption_key)


def create_assessor(
    config: Config, metrics: MetricsSink, decryptor: CredentialDecryptor | None
) -> Assessor:
    return Assessor(metrics=metrics, decryptor=decryptor, probe_timeout=config.probe_timeout)


def create_scheduler(
    config: Config,
    state_store: HealthStateStore,
    integration_store: IntegrationStore,
    job_queue: InMemoryJobQueue,
    breakers: CircuitBreakerRegistry,
) -> Scheduler:
    """Create the scheduler with intervals and windows taken from config."""
    return Scheduler(
        state_store=state_store,
        integration_store=integration_store,
        job_queue=job_queue,
        breakers=breakers,
        max_jitter_ms=config.max_jitter_ms,
        dedup_window_seconds=config.dedup_window_seconds,
        base_interval_ms=config.check_interval_ms,
        max_backoff_ms=config.max_backoff_ms,
    )


def create_monitor(
    config: Config,
    state_store: HealthStateStore,
    integration_store: IntegrationStore,
    assessor: Assessor,
    scheduler: Scheduler,
    response_handler: ResponseHandler,
    breakers: CircuitBreakerRegistry,
    job_queue: InMemoryJobQueue,
) -> HealthMonitor:
    return HealthMonitor(
        state_store=state_store,
        integration_store=integration_store,
        assessor=assessor,
        scheduler=scheduler,
        response_handler=response_handler,
        breakers=breakers,
        job_queue=job_queue,
        base_interval_ms=config.check_interval_ms,
    )


class HealthwatchContainer(containers.DeclarativeContainer):
    """Main container for the health monitor.

    ``config`` and ``integration_store`` are ``Dependency()`` providers that
    must be overridden before use; ``create_container`` does this.
    """

    config: providers.Dependency[Config] = providers.Dependency()
    integration_store: providers.Dependency[IntegrationStore] = providers.Dependency()

    state_store = providers.Singleton(create_state_store, config)
    job_queue = providers.Singleton(InMemoryJobQueue)
    metrics = providers.Singleton(InMemoryMetricsSink)
    breakers = providers.Singleton(create_breaker_registry, config)
    alert_sender = providers.Singleton(create_alert_sender, config)
    decryptor = providers.Singleton(create_decryptor, config)

    assessor = providers.Singleton(
        create_assessor,
        config=config,
        metrics=metrics,
        decryptor=decryptor,
    )
    scheduler = providers.Singleton(
        create_scheduler,
        config=config,
        state_store=state_store,
        integration_store=integration_store,
        job_queue=job_queue,
        breakers=breakers,
    )
    response_handler = providers.Singleton(
        ResponseHandler,
        integration_store=integration_store,
        alert_sender=alert_sender,
    )
    monitor = providers.Singleton(
        create_monitor,
        config=config,
        state_store=state_store,
        integration_store=integration_store,
        assessor=assessor,
        scheduler=scheduler,
        response_handler=response_handler,
        breakers=breakers,
        job_queue=job_queue,
    )


def create_container(
    config: Config | None = None,
    integration_store: IntegrationStore | None = None,
) -> HealthwatchContainer:
    """Create and configure the main DI container.

    Args:
        config: Optional configuration. If not provided, loads from environment.
        integration_store: Optional integration store. Defaults to an empty
            ``InMemoryIntegrationStore``.

    Returns:
        Fully configured HealthwatchContainer ready for use.
    """
    if config is None:
        config = load_config()
    if integration_store is None:
        integration_store = InMemoryIntegrationStore()

    container = HealthwatchContainer()
    container.config.override(providers.Object(config))
    container.integration_store.override(providers.Object(integration_store))
    return container


def bootstrap(
    env_file: Path | None = None,
    integration_store: IntegrationStore | None = None,
) -> HealthwatchContainer:
    """Load configuration, set up logging and build the container.

    Args:
        env_file: Optional path to a .env file.
        integration_store: Optional integration store.

    Returns:
        Configured HealthwatchContainer.
    """
    config = load_config(env_file)
    setup_logging(
        config.log_level,
        json_format=config.log_json,
        diagnostic_tags=config.diagnostic_tags,
    )
    logger.info("[CONTAINER] Logging configured at %s", config.log_level)
    return create_container(config=config, integration_store=integration_store)


__all__ = [
    "HealthwatchContainer",
    "bootstrap",
    "create_alert_sender",
    "create_assessor",
    "create_breaker_registry",
    "create_container",
    "create_decryptor",
    "create_monitor",
    "create_scheduler",
    "create_state_store",
]
