"""
JSON document store for timeclock collections.

Each collection is one file holding a JSON array of documents:

  read_collection(filepath)             – load all documents (missing file → [])
  locked_collection(filepath)           – exclusive read-modify-write context
  append_document(filepath, doc)        – append one document

Write safety:
  • Exclusive fcntl.flock() on a sidecar '<file>.lock' around every write.
  • The collection is re-read inside the lock, so concurrent writers never
    work from a stale copy.
  • New content goes to a temp file in the same directory and is moved into
    place with os.replace(); readers never see a half-written file.
"""

import fcntl
import json
import os
import tempfile
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List

Document = Dict[str, Any]


class StoreError(Exception):
    """Raised when a collection file exists but cannot be decoded."""


def read_collection(filepath: str) -> List[Document]:
    if not os.path.exists(filepath):
        return []
    with open(filepath, 'r', encoding='utf-8') as f:
        raw = f.read()
    if not raw.strip():
        return []
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise StoreError(f"Collection file is not valid JSON: {filepath} ({e})")
    if not isinstance(data, list):
        raise StoreError(f"Collection file must hold a JSON array: {filepath}")
    return data


def _write_atomic(filepath: str, docs: List[Document]) -> None:
    directory = os.path.dirname(filepath) or '.'
    fd, tmp = tempfile.mkstemp(prefix='.tmp-', suffix='.json', dir=directory)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(docs, f, ensure_ascii=False, indent=1)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, filepath)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


# ─── file locking ─────────────────────────────────────────────────────────────

@contextmanager
def _exclusive_lock(filepath: str):
    """Hold an exclusive POSIX lock on the collection's sidecar lock file."""
    os.makedirs(os.path.dirname(filepath) or '.', exist_ok=True)
    with open(filepath + '.lock', 'a+') as lf:
        fcntl.flock(lf.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lf.fileno(), fcntl.LOCK_UN)


@contextmanager
def locked_collection(filepath: str) -> Iterator[List[Document]]:
    """
    Yield the collection's documents under an exclusive lock.

    Mutate the yielded list in place; it is written back when the block exits
    normally.  If the block raises, nothing is written.
    """
    with _exclusive_lock(filepath):
        docs = read_collection(filepath)
        yield docs
        _write_atomic(filepath, docs)


# ─── public API ───────────────────────────────────────────────────────────────

def append_document(filepath: str, doc: Document) -> int:
    """Append *doc*; returns the new document count."""
    with locked_collection(filepath) as docs:
        docs.append(doc)
        return len(docs)
