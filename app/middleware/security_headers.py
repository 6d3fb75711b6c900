"""
Security headers middleware.

The service only answers JSON, so the policy is locked down: no framing,
no content sources, no MIME sniffing.  Entry payloads carry personal data
and must not be cached by intermediaries.

Usage:
    from app.middleware.security_headers import init_security_headers
    init_security_headers(app)
"""


def init_security_headers(app):
    """Register after_request handler that injects security headers."""

    @app.after_request
    def _add_security_headers(response):
        response.headers.setdefault("Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=31536000; includeSubDomains"
        )
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        response.headers.setdefault("Cache-Control", "no-store")

        # Remove server identification
        response.headers.pop("Server", None)

        return response
