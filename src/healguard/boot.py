# File: src/healguard/boot.py

import logging
from typing import Dict, Any, Optional

from healguard.config import settings
from healguard.domain.value_objects import DecisionPolicy, RetryPolicy, SeverityPolicy
from healguard.application.services import (
    AuditService,
    ThresholdService,
    AnomalyService,
    HealthService,
    RecoveryService,
    RecommendationService,
    DecisionService,
    SelfTestService,
    StatsService,
)
from healguard.infrastructure.cache import RedisCache
from healguard.infrastructure.control.controller import HttpComponentController
from healguard.infrastructure.notify.dispatcher import build_dispatcher

log = logging.getLogger(__name__)


def build_services(notifier: Optional[Any] = None, cache: Optional[Any] = None,
                   controller: Optional[Any] = None) -> Dict[str, Any]:
    """Build and wire all application services and dependencies."""
    log.info("Building application services...")
    services: Dict[str, Any] = {}

    try:
        notifier = notifier if notifier is not None else build_dispatcher()
        cache = cache if cache is not None else RedisCache()
        controller = controller if controller is not None else HttpComponentController()
        services["notifier"] = notifier
        services["cache"] = cache
        services["controller"] = controller

        decision_policy = DecisionPolicy.from_settings(settings)

        # --- Core Services ---
        audit_service = AuditService(notifier=notifier)
        threshold_service = ThresholdService(audit_service, notifier=notifier)
        anomaly_service = AnomalyService(
            audit_service, notifier=notifier, cache=cache,
            severity_policy=SeverityPolicy.from_settings(settings),
        )
        health_service = HealthService(
            threshold_service=threshold_service,
            anomaly_service=anomaly_service,
            audit_service=audit_service,
            cache=cache,
        )
        recovery_service = RecoveryService(
            audit_service, notifier=notifier, controller=controller, cache=cache,
            retry_policy=RetryPolicy.from_settings(settings),
        )
        recommendation_service = RecommendationService(
            audit_service, notifier=notifier, threshold_service=threshold_service, policy=decision_policy,
        )
        decision_service = DecisionService(audit_service, recommendation_service, policy=decision_policy)
        selftest_service = SelfTestService(audit_service, notifier=notifier, cache=cache)
        stats_service = StatsService(cache=cache)

        # --- Circular DI ---
        anomaly_service.recovery_service = recovery_service
        recommendation_service.recovery_service = recovery_service
        health_service.recovery_service = recovery_service
        recommendation_service.selftest_service = selftest_service

        services["audit_service"] = audit_service
        services["threshold_service"] = threshold_service
        services["anomaly_service"] = anomaly_service
        services["health_service"] = health_service
        services["recovery_service"] = recovery_service
        services["recommendation_service"] = recommendation_service
        services["decision_service"] = decision_service
        services["selftest_service"] = selftest_service
        services["stats_service"] = stats_service

        log.info("All services built and wired successfully.")
        return services

    except Exception as e:
        log.critical(f"Service building failed: {e}", exc_info=True)
        raise
