from typing import Any, Dict

from .config import RoutingSettings
from .types import InjectionResult

PROVIDER_FIELD = "provider"


class ProviderInjector:
    def inject(self, model: str, settings: RoutingSettings, body: Dict[str, Any]) -> InjectionResult:
        """
        Pin a mapped model to its provider.

        The caller's own "provider" object is kept as the base; only "order"
        and "allow_fallbacks" are overwritten. Unmapped models get the body
        back untouched. The input dict is never modified in place.
        """
        provider = settings.model_providers.get(model) if model else None
        if not provider:
            return InjectionResult(body, False, None)

        current = body.get(PROVIDER_FIELD)
        directive = dict(current) if isinstance(current, dict) else {}
        directive["order"] = [provider]
        directive["allow_fallbacks"] = bool(settings.allow_fallbacks)

        out = dict(body)
        out[PROVIDER_FIELD] = directive
        return InjectionResult(out, True, provider)


provider_injector = ProviderInjector()
