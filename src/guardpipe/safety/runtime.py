"""
Runtime helpers bridging configuration and guardrail execution.

Loads pipeline and bundle configuration from dicts, JSON/YAML strings or
files, and runs standalone bundles outside a client.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from guardpipe.core.exceptions import GuardrailConfigError, GuardrailValidationError
from guardpipe.core.models import GuardrailBundle, GuardrailResult, PipelineConfig
from guardpipe.safety.registry import GuardrailRegistry, default_spec_registry
from guardpipe.safety.spec import ConfiguredGuardrail

logger = structlog.get_logger()

_CONFIG_SUFFIXES = {".json", ".yaml", ".yml"}


def instantiate_guardrails(
    bundle: GuardrailBundle | Mapping[str, Any],
    registry: GuardrailRegistry | None = None,
) -> list[ConfiguredGuardrail]:
    """Instantiate a bundle against ``registry`` (default registry if omitted)."""
    if not isinstance(bundle, GuardrailBundle):
        bundle = _validate(GuardrailBundle, bundle)
    return (registry or default_spec_registry).instantiate_bundle(bundle)


async def _run_isolated(
    guardrail: ConfiguredGuardrail, ctx: Any, data: Any
) -> GuardrailResult:
    try:
        return await guardrail.run(ctx, data)
    except Exception as e:
        logger.error("Guardrail execution failed", guardrail=guardrail.name, error=str(e))
        return GuardrailResult(
            tripwire_triggered=False,
            execution_failed=True,
            original_exception=e,
            info={
                "checked_text": data,
                "error": str(e),
                "guardrail_name": guardrail.name,
            },
        )


async def run_guardrails(
    data: Any,
    bundle: GuardrailBundle | Mapping[str, Any],
    context: Any = None,
    raise_guardrail_errors: bool = False,
    registry: GuardrailRegistry | None = None,
) -> list[GuardrailResult]:
    """
    Run every guardrail of a bundle concurrently and return all results.

    Args:
        data: Input to validate
        bundle: Bundle configuration
        context: Context passed to each guardrail
        raise_guardrail_errors: Re-raise the first execution failure
        registry: Registry to resolve names against

    Returns:
        Results in bundle order
    """
    guardrails = instantiate_guardrails(bundle, registry)
    ctx = context if context is not None else {}

    results = list(
        await asyncio.gather(*(_run_isolated(g, ctx, data) for g in guardrails))
    )

    if raise_guardrail_errors:
        for result in results:
            if result.execution_failed and result.original_exception is not None:
                logger.debug("Re-raising guardrail execution error")
                raise result.original_exception

    return results


async def check_plain_text(
    text: str,
    bundle: GuardrailBundle | Mapping[str, Any],
    context: Any = None,
    registry: GuardrailRegistry | None = None,
) -> None:
    """
    Validate plain text against a bundle.

    Raises:
        GuardrailValidationError: If any guardrail trips
    """
    results = await run_guardrails(text, bundle, context, registry=registry)
    triggered = [r for r in results if r.tripwire_triggered]
    if triggered:
        raise GuardrailValidationError(triggered)


def _validate(model: type, data: Any) -> Any:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise GuardrailConfigError(f"Invalid {model.__name__}: {e}") from e


def _parse_text(text: str, suffix: str = ".json") -> Any:
    try:
        if suffix in (".yaml", ".yml"):
            return yaml.safe_load(text)
        return json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise GuardrailConfigError(f"Invalid configuration: {e}") from e


def _looks_like_path(config: str | Path) -> bool:
    if isinstance(config, Path):
        return True
    stripped = config.strip()
    if stripped.startswith(("{", "[")):
        return False
    return Path(stripped).suffix.lower() in _CONFIG_SUFFIXES or "/" in stripped or "\\" in stripped


def _read_config_file(path: str | Path) -> Any:
    path = Path(path)
    if not path.exists():
        raise GuardrailConfigError(f"Config file not found: {path}")
    return _parse_text(path.read_text(encoding="utf-8"), path.suffix.lower())


def load_config_bundle(source: str | Path | Mapping[str, Any]) -> GuardrailBundle:
    """
    Load a single bundle.

    Accepts either ``{"guardrails": [...]}`` or ``{"input": {"guardrails": [...]}}``.
    """
    if isinstance(source, Mapping):
        data: Any = source
    elif _looks_like_path(source):
        data = _read_config_file(source)
    else:
        data = _parse_text(source)

    if not isinstance(data, Mapping):
        raise GuardrailConfigError("Invalid bundle format: expected an object")

    if isinstance(data.get("guardrails"), list):
        payload = data
    elif isinstance(data.get("input"), Mapping) and isinstance(
        data["input"].get("guardrails"), list
    ):
        payload = {**data["input"], "version": data.get("version")}
    else:
        raise GuardrailConfigError(
            "Invalid bundle format: missing or invalid guardrails array "
            '(expected either "guardrails" or "input.guardrails")'
        )
    return _validate(GuardrailBundle, payload)


def load_pipeline_bundles(
    config: PipelineConfig | Mapping[str, Any] | str | Path,
) -> PipelineConfig:
    """
    Load a pipeline configuration.

    Args:
        config: A ``PipelineConfig``, a mapping, a JSON string, or a path to
            a ``.json``/``.yaml``/``.yml`` file

    Raises:
        GuardrailConfigError: On unreadable or invalid configuration
    """
    if isinstance(config, PipelineConfig):
        return config
    if isinstance(config, Mapping):
        return _validate(PipelineConfig, config)
    if _looks_like_path(config):
        data = _read_config_file(config)
    else:
        data = _parse_text(config)
    if not isinstance(data, Mapping):
        raise GuardrailConfigError("Invalid pipeline format: expected an object")
    return _validate(PipelineConfig, data)
