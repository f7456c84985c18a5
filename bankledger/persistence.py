"""
persistence.py - Object-graph snapshots

The live ledger is a graph: accounts point at users, loans, transactions and
shares, and those point back. A snapshot flattens that graph into six
id-keyed maps where every relationship is a tagged id reference:

    Ref     -> {"ref": "accounts", "id": "<id>"}        (id may be null)
    RefList -> {"ref": "shares", "ids": ["<id>", ...]}

Records are written as plain dicts carrying their "kind" tag. Decimals become
strings, datetimes ISO-8601 strings and enums their values, so the document
is JSON-safe.

Restoring runs in two phases so that identity is preserved:
    1. allocate an empty typed record for every stored record (by kind)
    2. fill each record's fields, resolving references against the new
       records and coercing values to the field's annotated type

Document layout:
    {"format": 1, "name": ..., "current_time": ...,
     "collections": {"users": {...}, "accounts": {...}, ...}}
"""

from __future__ import annotations
from dataclasses import MISSING, fields, is_dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union, get_args, get_origin, get_type_hints
import json
import logging

from .config import LedgerConfig
from .core import (
    COLLECTIONS, KIND_COLLECTIONS, KIND_INTEREST,
    DanglingReference, LedgerError, PersistenceError, Ref, RefList,
    UnresolvableReference, ValidationError, to_decimal,
)
from .entities import Account, Credential, Loan, Share, User
from .interest import Interest
from .ledger import Ledger
from .transactions import Transaction

log = logging.getLogger(__name__)

FORMAT_VERSION = 1

# Record kind -> class used to rebuild it.
RECORD_TYPES = {
    cls.kind: cls
    for cls in (User, Credential, Account, Loan, Share, Transaction)
}

# Nested (non-collection) record kinds.
NESTED_TYPES = {
    KIND_INTEREST: Interest,
}


# ============================================================================
# ENCODE
# ============================================================================

def _ref_id(target: Any, collection: str) -> str:
    record_id = getattr(target, "id", None)
    if not isinstance(record_id, str):
        raise UnresolvableReference(
            f"Member of {collection!r} reference has no id: {target!r}"
        )
    return record_id


def reference_encode(value: Any, _path: Optional[set] = None) -> Any:
    """
    Return a JSON-safe copy of value with references replaced by ids.

    The input is never modified. A container reached twice through
    independent paths is encoded twice; a container reached again on the
    path currently being encoded is an untagged cycle.

    Raises:
        UnresolvableReference: On a reference member without an id, an
            untagged cycle, or a value that has no encoding
    """
    if isinstance(value, Enum):
        return value.value
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Ref):
        if value.target is None:
            return {"ref": value.collection, "id": None}
        return {"ref": value.collection, "id": _ref_id(value.target, value.collection)}
    if isinstance(value, RefList):
        return {"ref": value.collection, "ids": [_ref_id(item, value.collection) for item in value]}

    path = set() if _path is None else _path
    marker = id(value)
    if marker in path:
        raise UnresolvableReference(
            f"Untagged cycle through {type(value).__name__}; use Ref or RefList"
        )
    path.add(marker)
    try:
        if is_dataclass(value) and not isinstance(value, type):
            encoded: Dict[str, Any] = {}
            kind = getattr(value, "kind", None)
            if kind is not None:
                encoded["kind"] = kind
            for f in fields(value):
                encoded[f.name] = reference_encode(getattr(value, f.name), path)
            return encoded
        if isinstance(value, Mapping):
            return {str(key): reference_encode(item, path) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [reference_encode(item, path) for item in value]
    finally:
        path.discard(marker)

    raise UnresolvableReference(f"Cannot encode value of type {type(value).__name__}")


# ============================================================================
# DECODE
# ============================================================================

def _lookup(collections: Mapping[str, Mapping[str, Any]], collection: str, record_id: Any) -> Any:
    if collection not in collections:
        raise DanglingReference(f"Reference into unknown collection {collection!r}")
    records = collections[collection]
    if not isinstance(record_id, str) or record_id not in records:
        raise DanglingReference(f"{collection} has no record {record_id!r}")
    return records[record_id]


def reference_decode(value: Any, collections: Mapping[str, Mapping[str, Any]]) -> Any:
    """
    Replace tagged id references in value with live Ref / RefList objects.

    Args:
        value: Flat structure as produced by reference_encode
        collections: Collection name -> {id: record} to resolve against

    Raises:
        DanglingReference: If a referenced collection or id is absent
    """
    if isinstance(value, Mapping):
        if "ref" in value and "id" in value and len(value) == 2:
            collection = value["ref"]
            if value["id"] is None:
                if collection not in collections:
                    raise DanglingReference(f"Reference into unknown collection {collection!r}")
                return Ref(collection)
            return Ref(collection, _lookup(collections, collection, value["id"]))
        if "ref" in value and "ids" in value and len(value) == 2:
            collection = value["ref"]
            ids = value["ids"]
            if not isinstance(ids, list):
                raise ValidationError(f"Reference list into {collection!r} must hold a list of ids")
            return RefList(collection, [_lookup(collections, collection, i) for i in ids])
        return {key: reference_decode(item, collections) for key, item in value.items()}
    if isinstance(value, list):
        return [reference_decode(item, collections) for item in value]
    return value


def _coerce(hint: Any, raw: Any, name: str) -> Any:
    """Convert a decoded value to the annotated field type."""
    if get_origin(hint) is Union:
        options = [arg for arg in get_args(hint) if arg is not type(None)]
        if raw is None:
            return None
        return _coerce(options[0], raw, name)

    if hint is Decimal:
        return to_decimal(raw, name)
    if hint is datetime:
        if isinstance(raw, datetime):
            return raw
        if not isinstance(raw, str):
            raise ValidationError(f"{name} must be an ISO-8601 string, got {raw!r}")
        try:
            return datetime.fromisoformat(raw)
        except ValueError:
            raise ValidationError(f"{name} is not an ISO-8601 timestamp: {raw!r}") from None
    if isinstance(hint, type) and issubclass(hint, Enum):
        try:
            return hint(raw)
        except ValueError:
            raise ValidationError(f"{name} has unknown value {raw!r}") from None
    if hint is Interest:
        if not isinstance(raw, Mapping) or raw.get("kind") != KIND_INTEREST:
            raise ValidationError(f"{name} must be an interest record")
        interest = Interest.__new__(Interest)
        _fill(interest, raw)
        return interest
    if hint in (Ref, RefList):
        if not isinstance(raw, hint):
            raise ValidationError(f"{name} must be a {hint.__name__} reference")
        return raw
    if hint is bool:
        if not isinstance(raw, bool):
            raise ValidationError(f"{name} must be a bool, got {raw!r}")
        return raw
    if hint is int:
        if isinstance(raw, bool) or not isinstance(raw, int):
            raise ValidationError(f"{name} must be an int, got {raw!r}")
        return raw
    if hint is str:
        if not isinstance(raw, str):
            raise ValidationError(f"{name} must be a string, got {raw!r}")
        return raw
    return raw


def _fill(record: Any, stored: Mapping[str, Any]) -> None:
    """Set every dataclass field of record from its decoded stored dict."""
    cls = type(record)
    hints = get_type_hints(cls)
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(stored) - known - {"kind"})
    if unknown:
        raise ValidationError(f"{cls.kind} record has unknown field(s): {', '.join(unknown)}")

    for f in fields(cls):
        if f.name in stored:
            value = _coerce(hints[f.name], stored[f.name], f"{cls.kind}.{f.name}")
        elif f.default is not MISSING:
            value = f.default
        elif f.default_factory is not MISSING:
            value = f.default_factory()
        else:
            raise ValidationError(f"{cls.kind} record is missing field {f.name!r}")
        if isinstance(value, (Ref, RefList)):
            expected = f.default_factory().collection if f.default_factory is not MISSING else value.collection
            if value.collection != expected:
                raise ValidationError(
                    f"{cls.kind}.{f.name} must reference {expected!r}, not {value.collection!r}"
                )
        object.__setattr__(record, f.name, value)


def retype_graph(flat: Mapping[str, Mapping[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """
    Rebuild the typed, fully linked record graph from flat collections.

    Either every record is restored or an error is raised; the returned
    collections are new objects and nothing is published on failure.

    Raises:
        ValidationError: On an unknown collection or kind, or a malformed record
        DanglingReference: If a reference names a missing record
    """
    if not isinstance(flat, Mapping):
        raise ValidationError("collections must be a mapping")
    unknown = sorted(set(flat) - set(COLLECTIONS))
    if unknown:
        raise ValidationError(f"Unknown collection(s): {', '.join(unknown)}")

    live: Dict[str, Dict[str, Any]] = {name: {} for name in COLLECTIONS}

    # Phase 1: typed shells, so references can resolve to final identities.
    for collection, records in flat.items():
        if not isinstance(records, Mapping):
            raise ValidationError(f"Collection {collection!r} must be a mapping")
        for record_id, stored in records.items():
            if not isinstance(stored, Mapping):
                raise ValidationError(f"{collection}/{record_id} is not a record")
            kind = stored.get("kind")
            cls = RECORD_TYPES.get(kind)
            if cls is None:
                raise ValidationError(f"{collection}/{record_id} has unknown kind {kind!r}")
            if KIND_COLLECTIONS[kind] != collection:
                raise ValidationError(f"{kind} record {record_id} stored in {collection!r}")
            if stored.get("id") != record_id:
                raise ValidationError(f"{collection}/{record_id} carries id {stored.get('id')!r}")
            live[collection][record_id] = cls.__new__(cls)

    # Phase 2: fields.
    for collection, records in flat.items():
        for record_id, stored in records.items():
            _fill(live[collection][record_id], reference_decode(stored, live))

    return live


# ============================================================================
# LEDGER DOCUMENTS
# ============================================================================

def encode_ledger(ledger: Ledger) -> Dict[str, Any]:
    """Flatten a ledger into a JSON-safe document."""
    return {
        "format": FORMAT_VERSION,
        "name": ledger.name,
        "current_time": ledger.current_time.isoformat(),
        "collections": {
            name: {
                record_id: reference_encode(records[record_id])
                for record_id in sorted(records)
            }
            for name, records in ledger.collections().items()
        },
    }


def decode_ledger(document: Mapping[str, Any], config: Optional[LedgerConfig] = None) -> Ledger:
    """
    Restore a ledger from a document produced by encode_ledger.

    Raises:
        PersistenceError: If the document format is not supported
        ValidationError / DanglingReference: If the document is malformed
    """
    if not isinstance(document, Mapping):
        raise ValidationError("ledger document must be a mapping")
    if document.get("format") != FORMAT_VERSION:
        raise PersistenceError(f"Unsupported snapshot format: {document.get('format')!r}")
    for key in ("name", "current_time", "collections"):
        if key not in document:
            raise ValidationError(f"ledger document is missing {key!r}")

    current_time = _coerce(datetime, document["current_time"], "current_time")
    collections = retype_graph(document["collections"])

    ledger = Ledger(document["name"], config=config, initial_time=current_time)
    for name, records in collections.items():
        ledger.collection(name).update(records)
    return ledger


def save_ledger(ledger: Ledger, store: Any) -> None:
    """Encode ledger as JSON and hand it to a durable store."""
    data = json.dumps(encode_ledger(ledger), sort_keys=True).encode("utf-8")
    store.save(data)
    log.info("ledger %s saved (%d bytes)", ledger.name, len(data))


def load_ledger(store: Any, config: Optional[LedgerConfig] = None) -> Ledger:
    """
    Load the latest snapshot from a durable store.

    Raises:
        NotFound: If the store holds nothing
        PersistenceError: If the stored bytes are not a valid snapshot
    """
    data = store.load()
    try:
        document = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise PersistenceError(f"Snapshot is not valid JSON: {exc}") from exc
    try:
        ledger = decode_ledger(document, config)
    except PersistenceError:
        raise
    except LedgerError as exc:
        raise PersistenceError(f"Snapshot is malformed: {exc}") from exc
    log.info("ledger %s loaded", ledger.name)
    return ledger
