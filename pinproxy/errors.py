from typing import Optional


class ProxyError(Exception):
    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

class MissingApiKeyError(ProxyError):
    status_code = 400

    def __init__(self):
        super().__init__("Missing OpenRouter API key. Set it in the web UI.")

class InvalidPayloadError(ProxyError):
    status_code = 400

    def __init__(self, message: str = "Invalid JSON payload."):
        super().__init__(message)

class UpstreamTransportError(ProxyError):
    status_code = 500

    def __init__(self, upstream_url: str, detail: str = ""):
        super().__init__(detail or f"Upstream {upstream_url} unreachable.")
        self.upstream_url = upstream_url

class NotFoundError(ProxyError):
    status_code = 404

    def __init__(self):
        super().__init__("Not found")
