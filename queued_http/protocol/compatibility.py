"""
Compatibility Gate

Some request options only make sense inside the process that performs the
HTTP call. When a caller sets one, the request is answered locally with a
synthetic 406 response instead of being published.
"""

from queued_http.core.config.constants import CONFIG_UNSUPPORTED_STATUS, STREAM_RESPONSE_TYPE
from queued_http.protocol.envelope import RequestConfig, Response

# Checked in this order; the first option that is set wins
WORKER_ONLY_OPTIONS: tuple[str, ...] = ("before_redirect", "http_agent", "https_agent", "lookup")


def worker_only_status_text(option: str) -> str:
    return f'Option "{option}" cannot be set on the client adapter and must be set on the worker server'


def check_compatibility(config: RequestConfig) -> Response | None:
    """
    Return a synthetic 406 Response when config cannot be dispatched.

    Returns:
        None when the request may be published
    """
    if config.response_type == STREAM_RESPONSE_TYPE:
        return Response(
            status=CONFIG_UNSUPPORTED_STATUS,
            status_text=f'Response Type "{STREAM_RESPONSE_TYPE}" Not Supported',
            headers={},
            config=config,
        )

    for option in WORKER_ONLY_OPTIONS:
        if getattr(config, option):
            return Response(
                status=CONFIG_UNSUPPORTED_STATUS,
                status_text=worker_only_status_text(option),
                headers={},
                config=config,
            )

    return None
