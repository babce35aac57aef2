"""Testing utilities for the Cloudant connector.

This module provides an in-memory CouchDB double served through
``httpx.MockTransport``, so connector behaviour can be exercised end to end
without a running server.

Supported surface:
    - Databases: HEAD, PUT, DELETE and GET (info)
    - Documents: GET and DELETE with revision checks, tombstones on delete
    - ``_all_docs`` with key ranges, skip, limit and include_docs
    - ``_find`` with a Mango subset, fields, skip, limit and bookmarks
    - ``_changes`` with since, limit, include_docs and the ``_selector`` filter
    - ``_bulk_docs`` with revision conflicts
    - Views backed by Python map/reduce callables
    - Search indexes answering ``*:*`` and ``field:value`` queries

Example:
    >>> server = FakeCouchServer()
    >>> server.create_database("n_flight")
    >>> server.put("n_flight", {"_id": "AA142", "economyClassBaseCost": 250})
    >>> client = CloudantClient(config, transport=server.transport())

"""

import json
import threading
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, TypeAlias
from urllib.parse import unquote

import httpx

Document: TypeAlias = dict[str, Any]
MapFunction: TypeAlias = Callable[[Document], Iterable[tuple[Any, Any]]]
ReduceFunction: TypeAlias = Callable[[list[Any]], Any]

_DESIGN_PREFIX = "_design/"


def _collation_key(value: Any) -> tuple[int, Any]:
    """Order JSON values the way CouchDB views do: null, bools, numbers, strings, arrays, objects."""
    if value is None:
        return (0, 0)
    if isinstance(value, bool):
        return (1, value)
    if isinstance(value, int | float):
        return (2, value)
    if isinstance(value, str):
        return (3, value)
    if isinstance(value, list):
        return (4, json.dumps(value, sort_keys=True))
    return (5, json.dumps(value, sort_keys=True))


def _type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int | float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    return "object"


def _lookup(document: Document, path: str) -> tuple[bool, Any]:
    value: Any = document
    for key in path.split("."):
        if not isinstance(value, dict) or key not in value:
            return False, None
        value = value[key]
    return True, value


def _match_condition(condition: Any, present: bool, value: Any) -> bool:
    if not isinstance(condition, dict) or not any(
        key.startswith("$") for key in condition
    ):
        return present and _collation_key(value) == _collation_key(condition)

    for operator, argument in condition.items():
        match operator:
            case "$eq":
                ok = present and _collation_key(value) == _collation_key(argument)
            case "$ne":
                ok = present and _collation_key(value) != _collation_key(argument)
            case "$gt":
                ok = present and _collation_key(value) > _collation_key(argument)
            case "$gte":
                ok = present and _collation_key(value) >= _collation_key(argument)
            case "$lt":
                ok = present and _collation_key(value) < _collation_key(argument)
            case "$lte":
                ok = present and _collation_key(value) <= _collation_key(argument)
            case "$in":
                ok = present and any(
                    _collation_key(value) == _collation_key(item) for item in argument
                )
            case "$exists":
                ok = present is bool(argument)
            case "$type":
                ok = present and _type_name(value) == argument
            case _:
                raise ValueError(f"Unsupported Mango operator: {operator}")
        if not ok:
            return False
    return True


def matches_selector(selector: dict[str, Any], document: Document) -> bool:
    """Evaluate a Mango selector against a document."""
    for key, condition in selector.items():
        if key == "$and":
            if not all(matches_selector(part, document) for part in condition):
                return False
        elif key == "$or":
            if not any(matches_selector(part, document) for part in condition):
                return False
        elif key == "$not":
            if matches_selector(condition, document):
                return False
        else:
            present, value = _lookup(document, key)
            if not _match_condition(condition, present, value):
                return False
    return True


def _project(document: Document, fields: list[str]) -> Document:
    projected: Document = {}
    for path in fields:
        present, value = _lookup(document, path)
        if not present:
            continue
        keys = path.split(".")
        target = projected
        for key in keys[:-1]:
            target = target.setdefault(key, {})
        target[keys[-1]] = value
    return projected


def _error(status: int, error: str, reason: str) -> httpx.Response:
    return httpx.Response(status, json={"error": error, "reason": reason})


@dataclass
class _View:
    map_function: MapFunction
    reduce_function: ReduceFunction | None = None


@dataclass
class _Database:
    documents: dict[str, Document] = field(default_factory=dict)
    # Latest sequence number per document id
    sequences: dict[str, int] = field(default_factory=dict)
    last_seq: int = 0
    views: dict[str, _View] = field(default_factory=dict)
    search_indexes: set[str] = field(default_factory=set)

    def live(self) -> list[Document]:
        return [
            doc
            for _, doc in sorted(self.documents.items())
            if not doc.get("_deleted")
        ]

    def data(self) -> list[Document]:
        return [
            doc for doc in self.live() if not doc["_id"].startswith(_DESIGN_PREFIX)
        ]


@dataclass
class _Injection:
    action: int | Exception
    remaining: int
    path: str | None


class FakeCouchServer:
    """In-memory CouchDB server answering the REST calls the connector makes.

    Every handled request is recorded in ``requests``. Failures can be queued
    with ``inject`` to exercise retry and error paths.
    """

    def __init__(self) -> None:
        self._databases: dict[str, _Database] = {}
        self._injections: list[_Injection] = []
        self._lock = threading.Lock()
        self.requests: list[httpx.Request] = []

    def transport(self) -> httpx.MockTransport:
        """Return an httpx transport routed to this server."""
        return httpx.MockTransport(self.handle)

    # ------------------------------------------------------------------
    # Direct manipulation
    # ------------------------------------------------------------------

    def create_database(self, name: str) -> None:
        """Create an empty database, keeping an existing one."""
        self._databases.setdefault(name, _Database())

    def has_database(self, name: str) -> bool:
        """Return whether the database exists."""
        return name in self._databases

    def put(self, database: str, document: Document) -> str:
        """Store a document directly, bypassing revision checks; returns the new revision."""
        db = self._databases[database]
        doc = dict(document)
        doc.setdefault("_id", uuid.uuid4().hex)
        return self._store(db, doc)

    def put_many(self, database: str, documents: Iterable[Document]) -> None:
        """Store documents directly."""
        for document in documents:
            self.put(database, document)

    def delete(self, database: str, doc_id: str) -> str:
        """Delete a document directly, leaving a tombstone; returns the tombstone revision."""
        db = self._databases[database]
        return self._store(db, {"_id": doc_id, "_deleted": True})

    def document(self, database: str, doc_id: str) -> Document | None:
        """Return a stored document or tombstone."""
        return self._databases[database].documents.get(doc_id)

    def documents(self, database: str) -> list[Document]:
        """Return the live data documents of a database in id order."""
        return self._databases[database].data()

    def add_view(
        self,
        database: str,
        design: str,
        name: str,
        map_function: MapFunction,
        reduce_function: ReduceFunction | None = None,
    ) -> None:
        """Register a view and store its design document."""
        db = self._databases[database]
        db.views[f"{design}/{name}"] = _View(map_function, reduce_function)
        self._update_design(db, design, "views", name)

    def add_search_index(self, database: str, design: str, name: str) -> None:
        """Register a search index and store its design document."""
        db = self._databases[database]
        db.search_indexes.add(f"{design}/{name}")
        self._update_design(db, design, "indexes", name)

    def inject(
        self, action: int | Exception, times: int = 1, path: str | None = None
    ) -> None:
        """Answer the next matching request(s) with a status code or raise an exception.

        Args:
            action: HTTP status to return, or a transport exception to raise
            times: Number of requests affected
            path: Only affect requests whose path contains this fragment

        """
        self._injections.append(_Injection(action, times, path))

    def _update_design(self, db: _Database, design: str, section: str, name: str) -> None:
        doc_id = f"{_DESIGN_PREFIX}{design}"
        current = db.documents.get(doc_id)
        design_doc = (
            dict(current)
            if current is not None and not current.get("_deleted")
            else {"_id": doc_id, "language": "python"}
        )
        entries = dict(design_doc.get(section, {}))
        entries[name] = {"source": "fake"}
        design_doc[section] = entries
        self._store(db, design_doc)

    def _store(self, db: _Database, document: Document) -> str:
        current = db.documents.get(document["_id"])
        generation = int(current["_rev"].split("-")[0]) if current else 0
        rev = f"{generation + 1}-{uuid.uuid4().hex}"
        if document.get("_deleted"):
            stored = {"_id": document["_id"], "_rev": rev, "_deleted": True}
        else:
            stored = {**document, "_rev": rev}
        db.documents[document["_id"]] = stored
        db.last_seq += 1
        db.sequences[document["_id"]] = db.last_seq
        return rev

    # ------------------------------------------------------------------
    # Request handling
    # ------------------------------------------------------------------

    def handle(self, request: httpx.Request) -> httpx.Response:
        """Route a request to its endpoint handler."""
        with self._lock:
            self.requests.append(request)
            injected = self._take_injection(request)
            if isinstance(injected, Exception):
                raise injected
            if injected is not None:
                return _error(injected, "unavailable", "injected failure")
            return self._route(request)

    def _take_injection(self, request: httpx.Request) -> int | Exception | None:
        for injection in self._injections:
            if injection.path is not None and injection.path not in request.url.path:
                continue
            injection.remaining -= 1
            if injection.remaining <= 0:
                self._injections.remove(injection)
            return injection.action
        return None

    def _route(self, request: httpx.Request) -> httpx.Response:
        raw_path = request.url.raw_path.decode("ascii").split("?")[0]
        segments = [unquote(s) for s in raw_path.strip("/").split("/") if s]
        if not segments:
            return httpx.Response(200, json={"couchdb": "Welcome", "vendor": {"name": "fake"}})

        name, rest = segments[0], segments[1:]
        method = request.method
        if not rest:
            return self._database_request(method, name)

        db = self._databases.get(name)
        if db is None:
            return _error(404, "not_found", "Database does not exist.")

        params = request.url.params
        body = json.loads(request.content) if request.content else {}
        match rest:
            case ["_all_docs"]:
                return self._all_docs(db, params)
            case ["_find"]:
                return self._find(db, body)
            case ["_changes"]:
                return self._changes(db, params, body)
            case ["_bulk_docs"]:
                return self._bulk_docs(db, body)
            case ["_design", design, "_view", view]:
                return self._view(db, f"{design}/{view}", params)
            case ["_design", design, "_search", index]:
                return self._search(db, f"{design}/{index}", params)
            case ["_design", design]:
                return self._document(db, method, f"{_DESIGN_PREFIX}{design}", params)
            case [doc_id]:
                return self._document(db, method, doc_id, params)
        return _error(404, "not_found", "missing")

    def _database_request(self, method: str, name: str) -> httpx.Response:
        exists = name in self._databases
        match method:
            case "HEAD":
                return httpx.Response(200 if exists else 404)
            case "PUT":
                if exists:
                    return _error(
                        412,
                        "file_exists",
                        "The database could not be created, the file already exists.",
                    )
                self._databases[name] = _Database()
                return httpx.Response(201, json={"ok": True})
            case "DELETE":
                if not exists:
                    return _error(404, "not_found", "Database does not exist.")
                del self._databases[name]
                return httpx.Response(200, json={"ok": True})
            case "GET":
                if not exists:
                    return _error(404, "not_found", "Database does not exist.")
                db = self._databases[name]
                deleted = sum(1 for d in db.documents.values() if d.get("_deleted"))
                return httpx.Response(
                    200,
                    json={
                        "db_name": name,
                        "doc_count": len(db.documents) - deleted,
                        "doc_del_count": deleted,
                        "update_seq": f"{db.last_seq}-fake",
                    },
                )
        return _error(405, "method_not_allowed", f"Only GET,HEAD,PUT,DELETE allowed, not {method}")

    def _document(
        self, db: _Database, method: str, doc_id: str, params: httpx.QueryParams
    ) -> httpx.Response:
        current = db.documents.get(doc_id)
        if current is None or current.get("_deleted"):
            reason = "deleted" if current is not None else "missing"
            return _error(404, "not_found", reason)
        if method == "GET":
            return httpx.Response(200, json=current)
        if method == "DELETE":
            if params.get("rev") != current["_rev"]:
                return _error(409, "conflict", "Document update conflict.")
            rev = self._store(db, {"_id": doc_id, "_deleted": True})
            return httpx.Response(200, json={"ok": True, "id": doc_id, "rev": rev})
        return _error(405, "method_not_allowed", f"{method} not supported")

    def _all_docs(self, db: _Database, params: httpx.QueryParams) -> httpx.Response:
        documents = db.live()
        if "startkey" in params:
            start = json.loads(params["startkey"])
            documents = [d for d in documents if d["_id"] >= start]
        if "endkey" in params:
            end = json.loads(params["endkey"])
            inclusive = params.get("inclusive_end", "true") == "true"
            documents = [
                d for d in documents if d["_id"] < end or (inclusive and d["_id"] == end)
            ]

        offset = int(params.get("skip", 0))
        page = documents[offset:]
        if "limit" in params:
            page = page[: int(params["limit"])]

        include_docs = params.get("include_docs") == "true"
        rows = []
        for doc in page:
            row: dict[str, Any] = {
                "id": doc["_id"],
                "key": doc["_id"],
                "value": {"rev": doc["_rev"]},
            }
            if include_docs:
                row["doc"] = doc
            rows.append(row)
        return httpx.Response(
            200, json={"total_rows": len(db.live()), "offset": offset, "rows": rows}
        )

    def _find(self, db: _Database, body: dict[str, Any]) -> httpx.Response:
        selector = body.get("selector")
        if not isinstance(selector, dict):
            return _error(400, "bad_request", "selector must be a JSON object")
        try:
            matched = [doc for doc in db.data() if matches_selector(selector, doc)]
        except ValueError as e:
            return _error(400, "invalid_operator", str(e))

        start = int(body["bookmark"]) if body.get("bookmark") else int(body.get("skip", 0))
        limit = int(body.get("limit", 25))
        page = matched[start : start + limit]
        fields = body.get("fields")
        docs = [_project(doc, fields) if fields else doc for doc in page]
        return httpx.Response(
            200, json={"docs": docs, "bookmark": str(start + len(page))}
        )

    def _changes(
        self, db: _Database, params: httpx.QueryParams, body: dict[str, Any]
    ) -> httpx.Response:
        since_token = params.get("since", "0")
        since = db.last_seq if since_token == "now" else int(since_token.split("-")[0])
        selector = body.get("selector") if params.get("filter") == "_selector" else None
        include_docs = params.get("include_docs") == "true"

        ordered = sorted(
            (seq, doc_id) for doc_id, seq in db.sequences.items() if seq > since
        )
        results = []
        for seq, doc_id in ordered:
            doc = db.documents[doc_id]
            if selector is not None and not matches_selector(selector, doc):
                continue
            change: dict[str, Any] = {
                "seq": f"{seq}-fake",
                "id": doc_id,
                "changes": [{"rev": doc["_rev"]}],
            }
            if doc.get("_deleted"):
                change["deleted"] = True
            if include_docs:
                change["doc"] = doc
            results.append(change)

        limit = int(params["limit"]) if "limit" in params else len(results)
        page = results[:limit]
        last_seq = page[-1]["seq"] if page else f"{max(since, 0)}-fake"
        return httpx.Response(
            200,
            json={
                "results": page,
                "last_seq": last_seq,
                "pending": len(results) - len(page),
            },
        )

    def _bulk_docs(self, db: _Database, body: dict[str, Any]) -> httpx.Response:
        outcomes = []
        for submitted in body.get("docs", []):
            doc = dict(submitted)
            doc_id = doc.setdefault("_id", uuid.uuid4().hex)
            current = db.documents.get(doc_id)
            if current is None:
                accepted = "_rev" not in doc
            elif current.get("_deleted"):
                # A deleted document may be recreated without a revision
                accepted = doc.get("_rev") in (None, current["_rev"])
            else:
                accepted = doc.get("_rev") == current["_rev"]
            if not accepted:
                outcomes.append(
                    {"id": doc_id, "error": "conflict", "reason": "Document update conflict."}
                )
                continue
            rev = self._store(db, doc)
            outcomes.append({"ok": True, "id": doc_id, "rev": rev})
        return httpx.Response(201, json=outcomes)

    def _view(
        self, db: _Database, name: str, params: httpx.QueryParams
    ) -> httpx.Response:
        view = db.views.get(name)
        if view is None:
            return _error(404, "not_found", "missing_named_view")

        rows: list[dict[str, Any]] = []
        for doc in db.data():
            for key, value in view.map_function(doc):
                rows.append({"id": doc["_id"], "key": key, "value": value})
        rows.sort(key=lambda row: (_collation_key(row["key"]), row["id"]))

        reducer = (
            view.reduce_function if params.get("reduce", "true") == "true" else None
        )
        if reducer is not None:
            rows = (
                [{"key": None, "value": reducer([r["value"] for r in rows])}]
                if rows
                else []
            )
        elif params.get("include_docs") == "true":
            for row in rows:
                row["doc"] = db.documents[row["id"]]

        offset = int(params.get("skip", 0))
        page = rows[offset:]
        if "limit" in params:
            page = page[: int(params["limit"])]
        if reducer is not None:
            return httpx.Response(200, json={"rows": page})
        return httpx.Response(
            200, json={"total_rows": len(rows), "offset": offset, "rows": page}
        )

    def _search(
        self, db: _Database, name: str, params: httpx.QueryParams
    ) -> httpx.Response:
        if name not in db.search_indexes:
            return _error(404, "not_found", "missing_named_index")

        query = params.get("q", "*:*")
        documents = db.data()
        if query != "*:*":
            term_field, _, term = query.partition(":")
            documents = [
                d for d in documents if str(_lookup(d, term_field)[1]) == term.strip('"')
            ]

        start = int(params["bookmark"]) if params.get("bookmark") else 0
        limit = min(int(params.get("limit", 25)), 200)
        page = documents[start : start + limit]
        include_docs = params.get("include_docs") == "true"
        rows = []
        for order, doc in enumerate(page, start=start):
            row: dict[str, Any] = {"id": doc["_id"], "order": [1.0, order], "fields": {}}
            if include_docs:
                row["doc"] = doc
            rows.append(row)
        return httpx.Response(
            200,
            json={
                "total_rows": len(documents),
                "bookmark": str(start + len(page)),
                "rows": rows,
            },
        )
