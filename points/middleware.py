import logging
import re

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = (
    "password",
    "token",
    "accessToken",
    "refreshToken",
    "secret",
    "key",
    "authorization",
)

_SENSITIVE_VALUE = re.compile(
    r'("(?:%s)"\s*:\s*")[^"]*' % "|".join(SENSITIVE_KEYS), re.IGNORECASE
)
_EMAIL = re.compile(r"([a-zA-Z0-9._%+-]+)@([a-zA-Z0-9.-]+\.[a-zA-Z]{2,})")


def mask_sensitive_data(data: str) -> str:
    """Blank out credential values and the local part of e-mail addresses."""
    if not data:
        return data
    data = _SENSITIVE_VALUE.sub(r"\1***", data)
    return _EMAIL.sub(r"***@\2", data)


class RequestResponseLoggingMiddleware:
    """
    Middleware that logs each request method, path and body, and the
    corresponding response status and content, with credentials masked.
    """

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        request_body = ""
        content_type = request.META.get("CONTENT_TYPE", "")

        if "multipart/form-data" in content_type:
            request_body = "<Multipart form data - body not logged>"
        elif request.method in ["POST", "PUT", "PATCH"]:
            try:
                if request.body:
                    request_body = mask_sensitive_data(request.body.decode("utf-8"))
            except UnicodeDecodeError:
                request_body = "<Could not decode body>"

        logger.info(
            "API Request: %s %s Body: %s",
            request.method,
            request.get_full_path(),
            request_body,
        )

        response = self.get_response(request)

        response_content = ""
        response_type = response.get("Content-Type", "")

        if response_type.startswith(("application/json", "text/")):
            if getattr(response, "streaming", False):
                response_content = "<Streaming content>"
            else:
                try:
                    response_content = mask_sensitive_data(
                        response.content.decode("utf-8")
                    )
                except UnicodeDecodeError:
                    response_content = "<Could not decode content>"
        else:
            response_content = f"<Content-Type: {response_type}>"

        logger.info(
            "API Response: %s %s Status: %s Content: %s",
            request.method,
            request.get_full_path(),
            response.status_code,
            response_content,
        )

        return response
