from typing import Any, Mapping, Optional

INJECTABLE_SUFFIXES = ("/chat/completions", "/completions", "/responses")


def is_injectable_path(path: str) -> bool:
    """Completion-shaped endpoints are the only ones whose bodies get rewritten."""
    return path.endswith(INJECTABLE_SUFFIXES)


class ModelResolver:
    override_header = "x-openrouter-model"

    def resolve(
        self,
        path: str,
        query_params: Mapping[str, str],
        headers: Mapping[str, str],
        parsed_body: Optional[Any] = None,
    ) -> str:
        """
        Work out which model the caller is asking for. First non-empty wins:
        - body "model" (injectable endpoints with a JSON object body only)
        - ?model= query parameter
        - x-openrouter-model header
        An empty string means there is nothing to map.
        """
        if is_injectable_path(path) and isinstance(parsed_body, dict):
            from_body = _clean(parsed_body.get("model"))
            if from_body:
                return from_body

        from_query = _clean(query_params.get("model"))
        if from_query:
            return from_query

        return _clean(headers.get(self.override_header))


def _clean(value: Any) -> str:
    if not value or isinstance(value, bool) or not isinstance(value, (str, int, float)):
        return ""
    return str(value).strip()


model_resolver = ModelResolver()
