from importlib import import_module
from typing import Any, Dict, Optional, cast
import inspect

from spindle_service.core.config import load_settings
from spindle_service.core.interfaces import ModelProvider, TelemetrySink


def load(dotted: str, **kwargs: Any) -> Any:
    """Import a dotted path and instantiate the class if callable.
    Filters kwargs to match the constructor signature (unless **kwargs is accepted)."""
    module, cls = dotted.rsplit(".", 1)
    mod = import_module(module)
    obj = getattr(mod, cls)

    if isinstance(obj, type):
        # class: inspect __init__ signature
        sig = inspect.signature(obj.__init__)
        params = list(sig.parameters.values())
        accepts_kwargs = any(p.kind == p.VAR_KEYWORD for p in params)
        if accepts_kwargs:
            return obj(**kwargs)
        allowed = {p.name for p in params if p.kind in (p.POSITIONAL_OR_KEYWORD, p.KEYWORD_ONLY) and p.name != "self"}
        filtered = {k: v for k, v in kwargs.items() if k in allowed}
        return obj(**filtered)

    # plain function or module-level object
    return obj


class ServiceFactory:
    def __init__(self, config: Optional[Dict[str, Any]] = None, provider: Optional[ModelProvider] = None):
        self.config = config if config is not None else load_settings()
        self._provider: ModelProvider | None = provider
        self._telemetry: TelemetrySink | None = None
        self._registry = None
        self._turn_service = None

    def get_provider(self) -> ModelProvider:
        if not self._provider:
            model_cfg = self.config.get("providers", {}).get("model", {})
            impl = model_cfg.get("impl")
            args = model_cfg.get("args", {}) or {}
            self._provider = cast(ModelProvider, load(impl, **args))
        return self._provider

    def get_telemetry(self) -> TelemetrySink:
        if not self._telemetry:
            tel_cfg = self.config.get("telemetry", {}) or {}
            impl = tel_cfg.get("impl", "spindle_service.core.telemetry.LoggingTelemetrySink")
            args = tel_cfg.get("args", {}) or {}
            self._telemetry = cast(TelemetrySink, load(impl, **args))
        return self._telemetry

    def get_tool_registry(self):
        if self._registry is None:
            from spindle_service.core.tool_registry import ToolRegistry

            tools_cfg = self.config.get("tools", {}) or {}
            registry_cfg = tools_cfg.get("registry", []) or []
            enabled = tools_cfg.get("enabled", []) or []
            self._registry = ToolRegistry(registry_cfg, enabled)
        return self._registry

    def get_turn_service(self):
        if self._turn_service is None:
            from spindle_service.core.config import protocol_options
            from spindle_service.protocol.service.turn_service import TurnService

            limits = self.config.get("limits", {}) or {}
            self._turn_service = TurnService(
                provider=self.get_provider(),
                tools=self.get_tool_registry().all(),
                telemetry=self.get_telemetry(),
                tool_timeout=float(limits.get("tool_timeout_sec", 600)),
                lane_max_pending=int(limits.get("lane_max_pending", 64)),
                max_spawn_depth=int(limits.get("max_spawn_depth", 4)),
                max_agent_steps=int(limits.get("max_agent_steps", 8)),
                protocol=protocol_options(self.config),
            )
        return self._turn_service
