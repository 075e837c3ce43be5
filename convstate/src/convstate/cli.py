"""convstate command-line interface.

What:
  Provide a Typer-based entry point exposing the ``features``, ``infer`` and
  ``audit`` commands for inspecting single messages and resolving exported
  conversations.

Why:
  Classifier regressions are reported as "this thread should have been
  DEFERRED". Operators need to replay an exported conversation against a
  given configuration and reference time, and see exactly which signals and
  reasons the engine produced, without deploying anything.

How:
  Load the runtime configuration (explicit ``--config`` or the usual
  discovery), read the conversation JSON, annotate the messages, optionally
  attach AI interpretations, resolve the state and print the verdict as JSON
  on stdout. Structured logs go to stderr so stdout stays machine-readable.

Interfaces:
  ``app`` (Typer application), ``features``, ``infer``, ``audit``, ``main``.

Invariants & Safety:
  - Exit codes follow shell expectations (``0`` success, ``1`` failure).
  - Input and configuration errors are logged with the offending path and
    never produce a partial JSON document on stdout.
"""
from __future__ import annotations

import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import typer

from .config.loader import RuntimeConfigError, get_runtime_config, load_runtime_config
from .config.schema import RuntimeConfig, ValidationError
from .core.ai_contract import augment_messages
from .core.audit import (
    ConversationSnapshotContext,
    build_feature_snapshot,
    resolve_computed_classification,
)
from .core.engine import InferenceEngine
from .core.features.extract import extract_features
from .core.features.schema import DIRECTIONS, AnnotatedMessage, InputError, messages_from_dicts
from .core.rule_hits import annotate_messages, build_rule_hits
from .utils.ids import new_run_id
from .utils.logging import JsonLogger, get_logger
from .utils.timeutils import parse_timestamp, utc_now


app = typer.Typer(help="Conversation state inference tools")


def _logger(component: str) -> JsonLogger:
    return get_logger(component, stream=sys.stderr)


def _load_config(config_path: Optional[Path]) -> RuntimeConfig:
    if config_path is not None:
        return load_runtime_config(config_path, reload=True)
    return get_runtime_config()


def _read_conversation(path: Path) -> Dict[str, Any]:
    """Read a conversation export; a bare list is taken as its messages."""

    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise InputError(f"Unable to read conversation file {path}: {exc}") from exc
    except ValueError as exc:
        raise InputError(f"Invalid JSON in {path}: {exc}") from exc
    if isinstance(payload, list):
        payload = {"messages": payload}
    if not isinstance(payload, dict) or not isinstance(payload.get("messages"), list):
        raise InputError(f"{path} must contain a 'messages' list")
    return payload


def _parse_now(now: Optional[str]) -> datetime:
    if now is None:
        return utc_now()
    parsed = parse_timestamp(now)
    if parsed is None:
        raise InputError(f"--now is not an ISO-8601 timestamp: {now!r}")
    return parsed


def _prepare_messages(
    conversation: Mapping[str, Any],
    runtime: RuntimeConfig,
    now: datetime,
    logger: JsonLogger,
) -> List[AnnotatedMessage]:
    try:
        messages = annotate_messages(messages_from_dicts(conversation["messages"]))
    except (AttributeError, TypeError, ValueError) as exc:
        raise InputError(f"Invalid message: {exc}") from exc
    if runtime.ai.mode == "off":
        return messages
    try:
        spent = int(conversation.get("ai_conversation_calls") or 0)
    except (TypeError, ValueError) as exc:
        raise InputError(f"ai_conversation_calls must be an integer: {exc}") from exc
    augmented, daily_calls, conversation_calls = augment_messages(
        messages, settings=runtime.ai, now=now, conversation_calls=spent, logger=logger
    )
    logger.info(
        "ai_augmented",
        mode=runtime.ai.mode,
        daily_calls=daily_calls,
        conversation_calls=conversation_calls,
    )
    return augmented


def _resolve(
    path: Path,
    *,
    config_path: Optional[Path],
    tenant: Optional[str],
    now: Optional[str],
    with_audit: bool,
) -> Tuple[Dict[str, Any], str]:
    run_id = new_run_id()
    runtime = _load_config(config_path)
    thresholds = runtime.inference_for(tenant)
    reference = _parse_now(now)
    conversation = _read_conversation(path)
    messages = _prepare_messages(conversation, runtime, reference, _logger("convstate.ai"))

    engine = InferenceEngine(thresholds, logger=_logger("convstate.engine"))
    inference = engine.infer(
        messages,
        previous_state=conversation.get("previous_state"),
        previous_evaluated_at=conversation.get("previous_evaluated_at"),
        final_touch_sent_at=conversation.get("final_touch_sent_at"),
        blocked_by_recipient=bool(conversation.get("blocked_by_recipient", False)),
        bounced_by_provider=bool(conversation.get("bounced_by_provider", False)),
        now=reference,
    )
    payload = inference.as_dict()
    if with_audit:
        context = ConversationSnapshotContext.from_dict(conversation)
        classification = resolve_computed_classification(
            inference,
            current_state=context.current_state,
            off_platform_outcome=context.off_platform_outcome,
        )
        payload["audit"] = build_feature_snapshot(
            context, messages, thresholds, inference, classification, reference
        )
    return payload, run_id


def _run(path: Path, config_path: Optional[Path], tenant: Optional[str], now: Optional[str], with_audit: bool) -> None:
    logger = _logger("convstate.cli")
    try:
        payload, run_id = _resolve(
            path, config_path=config_path, tenant=tenant, now=now, with_audit=with_audit
        )
    except RuntimeConfigError as exc:
        logger.error("runtime_load_failed", error=str(exc))
        raise typer.Exit(code=1) from exc
    except ValidationError as exc:
        logger.error("config_invalid", error=str(exc))
        raise typer.Exit(code=1) from exc
    except InputError as exc:
        logger.error("input_invalid", error=str(exc), path=str(path))
        raise typer.Exit(code=1) from exc
    typer.echo(json.dumps(payload, indent=2))
    logger.info("conversation_resolved", run_id=run_id, state=payload["state"], path=str(path))


@app.command("features")
def features(
    text: str = typer.Argument(..., help="Message text to analyse"),
    direction: str = typer.Option("inbound", help="Message direction: inbound or outbound"),
) -> None:
    """Print the feature record and rule hits extracted from one message."""

    if direction not in DIRECTIONS:
        _logger("convstate.cli").error("input_invalid", error=f"unknown direction {direction!r}")
        raise typer.Exit(code=1)
    record = extract_features(text, direction)
    payload = {"features": record.as_dict(), "rule_hits": list(build_rule_hits(record))}
    typer.echo(json.dumps(payload, indent=2))


@app.command("infer")
def infer(
    path: Path = typer.Argument(..., help="Conversation JSON file"),
    config: Optional[Path] = typer.Option(None, "--config", help="Explicit convstate.yaml path"),
    tenant: Optional[str] = typer.Option(None, help="Tenant whose threshold overrides apply"),
    now: Optional[str] = typer.Option(None, help="Reference time (ISO-8601); defaults to now"),
    audit: bool = typer.Option(False, "--audit", help="Include the audit feature snapshot"),
) -> None:
    """Resolve the lifecycle state of an exported conversation.

    What:
      Prints the inference result as JSON, optionally with the audit snapshot.

    Why:
      Replaying a thread at a fixed ``--now`` reproduces a reported verdict
      byte for byte, which is how misclassifications are triaged.

    How:
      Load configuration and tenant thresholds, annotate the messages, attach
      AI interpretations when the configured mode is not ``off`` and run the
      resolver.
    """

    _run(path, config, tenant, now, audit)


@app.command("audit")
def audit(
    path: Path = typer.Argument(..., help="Conversation JSON file"),
    config: Optional[Path] = typer.Option(None, "--config", help="Explicit convstate.yaml path"),
    tenant: Optional[str] = typer.Option(None, help="Tenant whose threshold overrides apply"),
    now: Optional[str] = typer.Option(None, help="Reference time (ISO-8601); defaults to now"),
) -> None:
    """Resolve a conversation and always include the audit snapshot."""

    _run(path, config, tenant, now, True)


def main() -> None:
    """Execute the Typer application entry point."""

    app()


if __name__ == "__main__":  # pragma: no cover
    main()
