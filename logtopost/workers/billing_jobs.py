"""Scheduled billing jobs: usage period reset, trial review reconciliation, event pruning.

Usage:
    python -m logtopost.workers.billing_jobs reset-usage
    python -m logtopost.workers.billing_jobs reconcile-trials
    python -m logtopost.workers.billing_jobs prune-events
    python -m logtopost.workers.billing_jobs all
"""
from datetime import datetime, timezone
import argparse
import json
import logging
from typing import Optional

from logtopost.core.config import Settings, build_entitlement_config, settings
from logtopost.core.database import create_all_tables
from logtopost.core.logging import configure_logging
from logtopost.features.billing.provider import BillingProvider
from logtopost.features.billing.service import get_provider
from logtopost.features.billing.webhooks import WebhookProcessor
from logtopost.features.entitlements.store import EntitlementStore
from logtopost.features.trials.service import TrialEligibilityEvaluator
from logtopost.features.usage.service import UsageLedger

logger = logging.getLogger("logtopost.jobs.billing")

JOBS = ("reset-usage", "reconcile-trials", "prune-events")

_DEFAULT = object()


def run_billing_jobs(
    jobs,
    *,
    now: Optional[datetime] = None,
    settings_obj: Optional[Settings] = None,
    provider=_DEFAULT,
) -> dict:
    cfg = settings_obj or settings
    now = now or datetime.now(timezone.utc)
    config = build_entitlement_config(cfg)
    billing_provider: Optional[BillingProvider] = get_provider(cfg) if provider is _DEFAULT else provider
    store = EntitlementStore(config)

    results = {}
    for job in jobs:
        if job == "reset-usage":
            results[job] = {"reset": UsageLedger(config, store).reset_period_usage(now)}
        elif job == "reconcile-trials":
            results[job] = TrialEligibilityEvaluator(config, billing_provider, store).reconcile_flagged(now)
        elif job == "prune-events":
            results[job] = {"pruned": WebhookProcessor(config, store, billing_provider).prune_events(now)}
        else:
            raise ValueError(f"Unknown job: {job}")

    logger.info("[jobs] billing jobs complete", extra={"jobs": list(jobs), "timestamp": now.isoformat()})
    return {"timestamp": now.isoformat(), "results": results}


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run scheduled billing jobs")
    parser.add_argument("job", choices=JOBS + ("all",))
    args = parser.parse_args(argv)

    configure_logging(settings.ENV, settings.LOG_LEVEL)
    if settings.AUTO_CREATE_TABLES:
        create_all_tables()

    jobs = JOBS if args.job == "all" else (args.job,)
    result = run_billing_jobs(jobs)
    print(json.dumps(result, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
