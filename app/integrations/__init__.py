"""app.integrations — External service gateway modules.

All outbound calls to services outside the logbook database go through a
gateway in this package, never via bare `requests` calls in services or
blueprints.

Current gateways:
  document_store.LocalDocumentStore — content-hash signature artifacts (default)
  document_store.HttpDocumentStore  — remote document service over REST
"""
