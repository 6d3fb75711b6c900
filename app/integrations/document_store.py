"""
Signature Document Store Gateway.

The state machine hands each accepted signature to a document store, which
applies it to the entry's rendered document and returns an artifact
reference stored on the SignatureTask.

Two implementations share one interface:

    LocalDocumentStore  — derives a deterministic ``sha256:`` reference from
                          the signed content; no I/O.  Default.
    HttpDocumentStore   — POSTs to a remote document service, with retries
                          and exponential backoff.

Selected by ``DOCUMENT_STORE_URL`` in ``build_document_store``; registered
on ``app.extensions["document_store"]`` by the application factory.

Testability: pass a mock ``session`` to HttpDocumentStore() in tests.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from datetime import datetime, timezone

import requests

logger = logging.getLogger(__name__)

_RETRY_MAX = 2
_RETRY_BACKOFF_SECONDS = [1, 4]
_DEFAULT_TIMEOUT = 15


class DocumentStoreError(Exception):
    """The document store could not apply the signature."""


def _signed_payload(entry, signer, consent_statement: str) -> dict:
    return {
        "entry_id": entry.id,
        "folio_number": entry.folio_number,
        "version": entry.version,
        "title": entry.title,
        "description": entry.description or "",
        "signer_id": signer.id,
        "signer_name": signer.full_name,
        "consent_statement": consent_statement,
    }


class LocalDocumentStore:
    """Content-hash artifact references, computed in-process."""

    def apply_signature(self, entry, signer, consent_statement: str) -> str:
        payload = _signed_payload(entry, signer, consent_statement)
        payload["signed_at"] = datetime.now(timezone.utc).isoformat()
        raw = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
        return "sha256:" + hashlib.sha256(raw).hexdigest()


class HttpDocumentStore:
    """Remote document service.

    Usage:
        store = HttpDocumentStore("https://docs.example.org/api", token="...")
        ref = store.apply_signature(entry, signer, "I approve this entry")
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: int = _DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
        backoff: list[int] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._session = session
        self._backoff = _RETRY_BACKOFF_SECONDS if backoff is None else backoff

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def apply_signature(self, entry, signer, consent_statement: str) -> str:
        """POST the signature; return the artifact reference.

        Raises:
            DocumentStoreError: every attempt failed or the response carried
                no ``artifact_ref``.
        """
        url = f"{self.base_url}/entries/{entry.id}/signatures"
        body = _signed_payload(entry, signer, consent_statement)
        last_error = "Unknown error"

        for attempt in range(_RETRY_MAX + 1):
            try:
                resp = self.session.post(url, json=body, headers=self._headers(), timeout=self.timeout)
                if resp.ok:
                    ref = (resp.json() or {}).get("artifact_ref")
                    if not ref:
                        raise DocumentStoreError("Document store response missing artifact_ref")
                    return ref
                last_error = f"HTTP {resp.status_code}: {resp.text[:300]}"
                if resp.status_code < 500:
                    break
                logger.warning(
                    "Document store request failed attempt=%d/%d status=%d entry=%s",
                    attempt + 1, _RETRY_MAX + 1, resp.status_code, entry.id,
                )
            except requests.Timeout:
                last_error = f"Request timed out after {self.timeout}s"
                logger.warning(
                    "Document store timed out attempt=%d/%d entry=%s",
                    attempt + 1, _RETRY_MAX + 1, entry.id,
                )
            except requests.RequestException as exc:
                last_error = str(exc)[:300]
                logger.warning(
                    "Document store network error attempt=%d/%d entry=%s error=%s",
                    attempt + 1, _RETRY_MAX + 1, entry.id, last_error,
                )
            except ValueError:
                last_error = "Document store returned a non-JSON body"
                break

            if attempt < _RETRY_MAX and self._backoff:
                time.sleep(self._backoff[min(attempt, len(self._backoff) - 1)])

        raise DocumentStoreError(last_error)


def build_document_store(config) -> LocalDocumentStore | HttpDocumentStore:
    """Pick the store from app config."""
    url = config.get("DOCUMENT_STORE_URL")
    if url:
        logger.info("Using remote document store at %s", url)
        return HttpDocumentStore(
            url,
            token=config.get("DOCUMENT_STORE_TOKEN"),
            timeout=int(config.get("DOCUMENT_STORE_TIMEOUT", _DEFAULT_TIMEOUT)),
        )
    return LocalDocumentStore()
