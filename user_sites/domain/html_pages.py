"""HTML page skeleton and minimal error pages."""

import html

PAGE_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
    <head>
        <meta charset="UTF-8"/>
        {head}
    </head>
    <body>
{body}
    </body>
</html>
"""

ERROR_MESSAGES = {
    400: "The request could not be understood.",
    403: "You are not allowed to see this.",
    404: "The person or page you are looking for does not exist.",
    405: "This page does not accept that kind of request.",
    413: "The request is too large.",
    500: "The page you requested exists, but could not be served to you due to some error.",
    501: "The server does not support that kind of request.",
    503: "The server is shutting down.",
}


def escape_text(value: str) -> str:
    """HTML-escape text and entity-encode braces and backslashes.

    The result can neither form a transclusion marker nor escape one.
    """
    return (
        html.escape(value)
        .replace("\\", "&#92;")
        .replace("{", "&#123;")
        .replace("}", "&#125;")
    )


def render_page(head: str, body: str) -> str:
    """Wrap head and body fragments in the shared document skeleton."""
    return PAGE_TEMPLATE.format(head=head, body=body)


def error_page(status_code: int, reason: str) -> bytes:
    """Return a small HTML document describing an error status."""
    message = ERROR_MESSAGES.get(status_code, reason)
    head = f"<title>{status_code} {escape_text(reason)}</title>"
    body = f"        <h1>{escape_text(message)}</h1>"
    return render_page(head, body).encode()
