"""Component factory for PhaseForge.

Creates and wires the infrastructure components (config, model registry,
vendor client, session, agent context) so phase orchestrators receive
fully-initialized dependencies.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from phaseforge.compiler import ArtifactWriter, Compiler
from phaseforge.context.agent_context import AgentContext
from phaseforge.context.session import Session
from phaseforge.context.telemetry import JsonlTelemetrySink
from phaseforge.context.token_usage import TokenUsage
from phaseforge.core.config import (
    AppConfig,
    ModelRegistry,
    PromptLoader,
    load_config,
    load_model_registry,
    resolve_api_key,
)
from phaseforge.core.models import Phase
from phaseforge.vendor.client import VendorClient

logger = logging.getLogger("phaseforge.factory")


@dataclass
class ComponentBundle:
    """Container for all initialized components of one session."""

    config: AppConfig
    model_registry: ModelRegistry
    vendor: VendorClient
    session: Session
    context: AgentContext
    telemetry: Optional[JsonlTelemetrySink] = None


class ComponentFactory:
    """Factory for creating and wiring PhaseForge infrastructure.

    Usage:
        bundle = ComponentFactory.create(config_dir=Path("config"), compiler=my_compiler)
        record = await AnalyzePhase().run(bundle.context, "Build a todo API")
        await ComponentFactory.close(bundle)
    """

    @staticmethod
    def create(
        config_dir: Optional[Path] = None,
        env: Optional[str] = None,
        api_key: Optional[str] = None,
        compiler: Optional[Compiler] = None,
        writers: Optional[dict[Phase, ArtifactWriter]] = None,
        session: Optional[Session] = None,
    ) -> ComponentBundle:
        config = load_config(config_dir=config_dir, env=env)
        registry = load_model_registry(config_dir=config_dir)
        prompts_dir = (config_dir / "prompts") if config_dir is not None else None

        vendor = VendorClient(config=config.vendor, api_key=api_key or resolve_api_key(config))
        logger.info("Vendor client ready: %s (%s)", config.vendor.base_url, config.vendor.model)

        if session is None:
            session = Session(
                token_usage=TokenUsage(jsonl_path=config.token_usage.jsonl_path),
                writers=writers,
            )
        elif writers:
            session.writers.update(writers)

        telemetry: Optional[JsonlTelemetrySink] = None
        if config.telemetry.enabled:
            telemetry = JsonlTelemetrySink(jsonl_path=Path(config.telemetry.jsonl_path))
            telemetry.attach(session)
            logger.info("Telemetry enabled: %s", config.telemetry.jsonl_path)

        context = AgentContext(
            session=session,
            vendor=vendor,
            config=config,
            registry=registry,
            compiler=compiler,
            prompts=PromptLoader(prompts_dir),
        )
        return ComponentBundle(
            config=config,
            model_registry=registry,
            vendor=vendor,
            session=session,
            context=context,
            telemetry=telemetry,
        )

    @staticmethod
    async def close(bundle: ComponentBundle) -> None:
        """Shut down network clients."""
        await bundle.vendor.aclose()
        if bundle.telemetry is not None:
            bundle.telemetry.flush_metrics()
        logger.info("Components closed")
