"""
The Lambda Adapter & Orchestrator for the Sender Aggregator service.

This module is the main entry point for the AWS Lambda function. It is
responsible for:
1.  Initializing and configuring AWS Lambda Powertools (Logger, Tracer, Metrics).
2.  Parsing and validating the scheduled invocation event.
3.  Holding the owner's scan lease around one budget-bounded scan cycle,
    and around a reset.
4.  Dispatching start, status and reset requests.
5.  Publishing the sorted report projection after each scan cycle.
6.  Reporting failures in the response instead of raising, so the schedule
    keeps re-invoking and the scan resumes from its last checkpoint.
"""

from typing import Any

import boto3
import pydantic
from aws_lambda_powertools import Logger, Metrics, Tracer
from aws_lambda_powertools.metrics import MetricUnit
from aws_lambda_powertools.utilities.typing import LambdaContext

from .clients import GmailSource, S3Client, load_gmail_credentials
from .config import get_config
from .core import ScanDriver, get_scan_status
from .exceptions import (
    InvalidScanEventError,
    ScanInProgressError,
    SenderAggregatorError,
    get_error_context,
    is_retryable_error,
)
from .report import publish_report
from .schemas import ScanAction, ScanEvent
from .store import DynamoSenderStore, held_lease

# --- Global & Reusable Components ---
CONFIG = get_config()

logger = Logger(service=CONFIG.service_name, level=CONFIG.log_level)
tracer = Tracer(service=CONFIG.service_name)
metrics = Metrics(
    namespace="SenderAggregator",
    service=CONFIG.service_name,
)

sender_table = boto3.resource("dynamodb").Table(CONFIG.sender_table)

s3_client = (
    S3Client(s3_client=boto3.client("s3"), kms_key_id=CONFIG.report_kms_key_id)
    if CONFIG.report_enabled
    else None
)


def _build_source(owner_id: str) -> GmailSource:
    credentials = load_gmail_credentials(CONFIG.gmail_secret_name(owner_id))
    return GmailSource.from_credentials(
        credentials,
        timeout_seconds=CONFIG.source_timeout_seconds,
        num_retries=CONFIG.source_max_retries,
    )


def _publish_report_safely(store: DynamoSenderStore) -> dict[str, Any] | None:
    """Report failures are logged; they never fail the cycle."""
    if s3_client is None or not CONFIG.report_bucket:
        return None
    try:
        stats = publish_report(store, s3_client, CONFIG.report_bucket)
    except SenderAggregatorError as e:
        logger.warning(f"Report publishing failed: {e}", extra={"error": get_error_context(e)})
        return None
    return {"sender_count": stats.sender_count, "total_emails": stats.total_emails}


@tracer.capture_method
def _run_scan(
    store: DynamoSenderStore, context: LambdaContext, restart: bool = False
) -> dict[str, Any]:
    with held_lease(store, context.aws_request_id, CONFIG.lease_ttl_seconds):
        source = _build_source(store.owner_id)
        driver = ScanDriver(source, store, CONFIG, context=context)
        if restart:
            driver.restart()
        summary = driver.run_cycle()

    response: dict[str, Any] = {
        "status": "complete" if summary.done else "in_progress",
        "owner_id": store.owner_id,
        "summary": summary.model_dump(),
    }
    if summary.stopped_reason == "already_complete":
        return response

    metrics.add_metric(
        name="ThreadsProcessed", unit=MetricUnit.Count, value=summary.records_processed
    )
    metrics.add_metric(name="NewSenders", unit=MetricUnit.Count, value=summary.inserted)
    metrics.add_metric(name="UpdatedSenders", unit=MetricUnit.Count, value=summary.updated)
    metrics.add_metric(name="Checkpoints", unit=MetricUnit.Count, value=summary.checkpoints)
    if summary.done:
        metrics.add_metric(name="ScanCompleted", unit=MetricUnit.Count, value=1)
        logger.info("Scan complete.", extra={"total_processed": summary.total_processed})

    report = _publish_report_safely(store)
    if report is not None:
        response["report"] = report
    return response


def _run_status(store: DynamoSenderStore) -> dict[str, Any]:
    source = _build_source(store.owner_id)
    status = get_scan_status(store, source, CONFIG.source_query)
    return {"owner_id": store.owner_id, **status.model_dump()}


def _run_reset(store: DynamoSenderStore, context: LambdaContext) -> dict[str, Any]:
    with held_lease(store, context.aws_request_id, CONFIG.lease_ttl_seconds):
        deleted = store.reset()
    logger.info("Owner data reset.", extra={"deleted_items": deleted})
    return {"status": "reset", "owner_id": store.owner_id, "deleted_items": deleted}


@logger.inject_lambda_context()
@tracer.capture_lambda_handler
@metrics.log_metrics(capture_cold_start_metric=True)
def handler(event: dict, context: LambdaContext) -> dict[str, Any]:
    """Main Lambda handler for scheduled scan invocations and manual requests."""
    metrics.add_dimension("environment", CONFIG.environment)

    try:
        scan_event = ScanEvent.model_validate(event or {})
    except pydantic.ValidationError as e:
        errors = e.errors(include_url=False, include_context=False, include_input=False)
        logger.warning("Invalid scan event.", extra={"validation_errors": errors})
        error = InvalidScanEventError(
            "Scan event failed validation.", context={"validation_errors": errors}
        )
        return {"status": "invalid_event", "error": get_error_context(error)}

    logger.append_keys(owner_id=scan_event.owner_id, action=scan_event.action.value)
    store = DynamoSenderStore(sender_table, scan_event.owner_id)

    try:
        if scan_event.action is ScanAction.RESET:
            return _run_reset(store, context)
        if scan_event.action is ScanAction.STATUS:
            return _run_status(store)
        return _run_scan(store, context, restart=scan_event.action is ScanAction.START)

    except ScanInProgressError as e:
        logger.info("Another invocation holds the scan lease. Skipping.")
        return {"status": "skipped", "owner_id": scan_event.owner_id, "error": get_error_context(e)}

    except SenderAggregatorError as e:
        metrics.add_metric(name="CycleFailures", unit=MetricUnit.Count, value=1)
        log = logger.warning if is_retryable_error(e) else logger.error
        log(f"Scan request failed: {e}", extra={"error": get_error_context(e)})
        return {"status": "failed", "owner_id": scan_event.owner_id, "error": get_error_context(e)}
