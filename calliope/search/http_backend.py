"""
Elasticsearch REST implementation of the search backend contract.

Talks to the cluster over plain HTTP with ``requests``:

  search        POST /{index}/_search[?scroll=ttl]
  scroll        POST /_search/scroll
  clear_scroll  DELETE /_search/scroll
  mget          POST /{index}/_mget
  msearch       POST /{index}/_msearch      (NDJSON)
  bulk_delete   POST /{index}/_bulk         (NDJSON)
  delete        DELETE /{index}/_doc/{id}

Usage
-----
    backend = HttpSearchBackend(SearchConfig(host="es.example.org"))
    resp = backend.search("metadata", {"size": 0, "query": {"match_all": {}}})
"""
from __future__ import annotations

import json
import logging
from typing import Dict, List, Optional, Sequence

import requests

from ..config import SearchConfig
from ..errors import SearchRequestError, SearchUnavailableError
from . import request_with_retry
from .backend import SearchBackend

log = logging.getLogger(__name__)

_NDJSON = {"Content-Type": "application/x-ndjson"}


def _ndjson(lines: Sequence[Dict]) -> str:
    return "".join(json.dumps(line) + "\n" for line in lines)


class HttpSearchBackend(SearchBackend):
    """Search backend over the Elasticsearch REST API."""

    def __init__(
        self,
        config: SearchConfig,
        session: Optional[requests.Session] = None,
    ):
        self._cfg = config
        self._session = session or requests.Session()
        if config.username:
            self._session.auth = (config.username, config.password or "")
        log.info("Search backend: %s", config.base_url)

    # ── Plumbing ─────────────────────────────────────────────────────

    def _call(
        self,
        method: str,
        path: str,
        *,
        body: Optional[Dict] = None,
        ndjson: Optional[str] = None,
    ) -> requests.Response:
        return request_with_retry(
            self._session,
            method,
            f"{self._cfg.base_url}{path}",
            json=body,
            data=ndjson,
            headers=_NDJSON if ndjson is not None else None,
            timeout=self._cfg.timeout_s,
            retries=self._cfg.retries,
            backoff=self._cfg.backoff_s,
        )

    @staticmethod
    def _json(resp: requests.Response) -> Dict:
        try:
            return resp.json()
        except ValueError as exc:
            raise SearchUnavailableError(f"Backend returned non-JSON body: {exc}") from exc

    # ── Contract ─────────────────────────────────────────────────────

    def search(self, index: str, body: Dict, scroll: Optional[str] = None) -> Dict:
        path = f"/{index}/_search"
        if scroll:
            path += f"?scroll={scroll}"
        return self._json(self._call("POST", path, body=body))

    def scroll(self, scroll_id: str, ttl: str) -> Dict:
        return self._json(self._call(
            "POST", "/_search/scroll", body={"scroll": ttl, "scroll_id": scroll_id},
        ))

    def clear_scroll(self, scroll_id: str) -> bool:
        try:
            resp = self._call("DELETE", "/_search/scroll", body={"scroll_id": [scroll_id]})
        except SearchRequestError as exc:
            # 404: already expired or cleared
            if exc.status == 404:
                return False
            raise
        return bool(self._json(resp).get("succeeded", False))

    def mget(
        self,
        index: str,
        ids: Sequence[str],
        includes: Sequence[str] = (),
        excludes: Sequence[str] = (),
    ) -> List[Dict]:
        source: Dict = {}
        if includes:
            source["includes"] = list(includes)
        if excludes:
            source["excludes"] = list(excludes)
        docs = []
        for doc_id in ids:
            item: Dict = {"_id": doc_id}
            if source:
                item["_source"] = source
            docs.append(item)
        data = self._json(self._call("POST", f"/{index}/_mget", body={"docs": docs}))
        return data.get("docs", [])

    def msearch(self, index: str, bodies: Sequence[Dict]) -> List[Dict]:
        lines: List[Dict] = []
        for body in bodies:
            lines.append({"index": index})
            lines.append(body)
        data = self._json(self._call("POST", f"/{index}/_msearch", ndjson=_ndjson(lines)))
        return data.get("responses", [])

    def bulk_delete(self, index: str, ids: Sequence[str]) -> bool:
        if not ids:
            return True
        lines = [{"delete": {"_index": index, "_id": doc_id}} for doc_id in ids]
        data = self._json(self._call("POST", f"/{index}/_bulk", ndjson=_ndjson(lines)))
        return not data.get("errors", False)

    def delete(self, index: str, doc_id: str) -> bool:
        try:
            resp = self._call("DELETE", f"/{index}/_doc/{doc_id}")
        except SearchRequestError as exc:
            if exc.status == 404:
                return False
            raise
        return self._json(resp).get("result") == "deleted"

    def close(self) -> None:
        self._session.close()
