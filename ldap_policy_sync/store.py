"""
Transactional storage for synchronized documents and policy modules.

The store keeps two namespaces: a hierarchical document tree addressed by
slash-separated paths, and a flat mapping of policy module ids to raw source.
Every read and write happens inside a transaction. Write transactions work on
a private copy of both namespaces and are published only on commit, so an
aborted transaction leaves nothing visible.
"""

import copy
import itertools
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple
from urllib.parse import unquote

logger = logging.getLogger(__name__)

ADD_OP = 'add'
REMOVE_OP = 'remove'
REPLACE_OP = 'replace'

NOT_FOUND_ERR = 'storage_not_found_error'
WRITE_CONFLICT_ERR = 'storage_write_conflict_error'
INVALID_PATCH_ERR = 'storage_invalid_patch_error'
INVALID_TXN_ERR = 'storage_invalid_txn_error'
INVALID_PATH_ERR = 'storage_invalid_path_error'

Path = Tuple[str, ...]


class StoreError(Exception):
    """Raised when a storage operation fails."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


def is_not_found(error: Exception) -> bool:
    return isinstance(error, StoreError) and error.code == NOT_FOUND_ERR


def parse_path(path: str) -> Path:
    """
    Parse a slash-separated path string into its segments.

    "/" is the root. Segments are percent-decoded so keys may contain "/".

    Raises:
        StoreError: If the path does not start with "/" or has an empty segment
    """
    if not isinstance(path, str) or not path.startswith('/'):
        raise StoreError(INVALID_PATH_ERR, f"path must begin with '/': {path!r}")
    if path == '/':
        return ()
    segments = path[1:].split('/')
    if any(segment == '' for segment in segments):
        raise StoreError(INVALID_PATH_ERR, f"path contains an empty segment: {path!r}")
    return tuple(unquote(segment) for segment in segments)


def format_path(path: Sequence[str]) -> str:
    return '/' + '/'.join(str(segment).replace('/', '%2F') for segment in path)


class Transaction:
    """Handle for one unit of work against a store."""

    def __init__(self, txn_id: int, write: bool, data: Any, policies: Dict[str, bytes]):
        self.id = txn_id
        self.write = write
        self.data = data
        self.policies = policies
        self.closed = False

    def __repr__(self):
        mode = 'write' if self.write else 'read'
        return f"Transaction(id={self.id}, mode={mode}, closed={self.closed})"


class Store(ABC):
    """
    Abstract transactional store.

    Implementations provide atomic transactions over a document namespace
    and a policy module namespace.
    """

    @abstractmethod
    def new_transaction(self, write: bool = False) -> Transaction:
        pass

    @abstractmethod
    def commit(self, txn: Transaction) -> None:
        pass

    @abstractmethod
    def abort(self, txn: Transaction) -> None:
        pass

    @abstractmethod
    def read(self, txn: Transaction, path: Path) -> Any:
        pass

    @abstractmethod
    def write(self, txn: Transaction, op: str, path: Path, value: Any = None) -> None:
        pass

    @abstractmethod
    def upsert_policy(self, txn: Transaction, module_id: str, raw: bytes) -> None:
        pass

    @abstractmethod
    def get_policy(self, txn: Transaction, module_id: str) -> bytes:
        pass

    @abstractmethod
    def list_policies(self, txn: Transaction) -> List[str]:
        pass

    @abstractmethod
    def delete_policy(self, txn: Transaction, module_id: str) -> None:
        pass

    @contextmanager
    def transaction(self, write: bool = False) -> Iterator[Transaction]:
        """
        Run the enclosed block in a transaction.

        The transaction commits when the block exits normally and aborts when
        it raises; the exception is re-raised unchanged.
        """
        txn = self.new_transaction(write=write)
        try:
            yield txn
        except BaseException:
            self.abort(txn)
            raise
        else:
            self.commit(txn)

    def make_dir(self, txn: Transaction, path: Path) -> None:
        """
        Ensure every node along path exists as an object.

        Missing nodes are created empty. An existing node that is not an
        object is a write conflict.
        """
        if len(path) == 0:
            return
        try:
            node = self.read(txn, path)
        except StoreError as e:
            if not is_not_found(e):
                raise
            self.make_dir(txn, path[:-1])
            self.write(txn, ADD_OP, path, {})
            return
        if not isinstance(node, dict):
            raise StoreError(WRITE_CONFLICT_ERR, f"{format_path(path)} is not an object")

    def non_empty(self, txn: Transaction) -> Callable[[Sequence[str]], bool]:
        """
        Return a predicate telling whether a path holds data in this transaction.

        A path counts as occupied when it exists, or when its nearest existing
        ancestor is not an object.
        """
        def check(path: Sequence[str]) -> bool:
            path = tuple(path)
            try:
                self.read(txn, path)
                return True
            except StoreError as e:
                if not is_not_found(e):
                    raise
            for i in range(len(path) - 1, 0, -1):
                try:
                    value = self.read(txn, path[:i])
                except StoreError as e:
                    if not is_not_found(e):
                        raise
                    continue
                return not isinstance(value, dict)
            return False

        return check


class InMemoryStore(Store):
    """
    Store keeping both namespaces in process memory.

    Write transactions are serialized by a lock held from new_transaction()
    until commit() or abort(). Read transactions never block and see the
    state committed when they began.
    """

    def __init__(self, data: Optional[Dict[str, Any]] = None, policies: Optional[Dict[str, bytes]] = None):
        if data is not None and not isinstance(data, dict):
            raise StoreError(INVALID_PATCH_ERR, "root document must be an object")
        self._data = copy.deepcopy(data) if data is not None else {}
        self._policies = dict(policies or {})
        self._write_lock = threading.Lock()
        self._ids = itertools.count(1)

    def new_transaction(self, write: bool = False) -> Transaction:
        if write:
            self._write_lock.acquire()
            txn = Transaction(next(self._ids), True, copy.deepcopy(self._data), dict(self._policies))
        else:
            txn = Transaction(next(self._ids), False, self._data, self._policies)
        logger.debug(f"Opened {txn}")
        return txn

    def commit(self, txn: Transaction) -> None:
        self._check_open(txn)
        txn.closed = True
        if txn.write:
            self._data = txn.data
            self._policies = txn.policies
            self._write_lock.release()
        logger.debug(f"Committed {txn}")

    def abort(self, txn: Transaction) -> None:
        if txn.closed:
            return
        txn.closed = True
        if txn.write:
            self._write_lock.release()
        logger.debug(f"Aborted {txn}")

    def read(self, txn: Transaction, path: Path) -> Any:
        self._check_open(txn)
        node = txn.data
        for i, key in enumerate(path):
            node = self._child(node, key, path[:i + 1])
        return copy.deepcopy(node)

    def write(self, txn: Transaction, op: str, path: Path, value: Any = None) -> None:
        self._check_writable(txn)
        if op not in (ADD_OP, REMOVE_OP, REPLACE_OP):
            raise StoreError(INVALID_PATCH_ERR, f"unknown patch operation: {op!r}")

        if len(path) == 0:
            if op == REMOVE_OP:
                raise StoreError(INVALID_PATCH_ERR, "root document cannot be removed")
            if not isinstance(value, dict):
                raise StoreError(INVALID_PATCH_ERR, "root document must be an object")
            txn.data = copy.deepcopy(value)
            return

        parent = txn.data
        for i, key in enumerate(path[:-1]):
            parent = self._child(parent, key, path[:i + 1])

        key = path[-1]
        if isinstance(parent, dict):
            self._write_object(parent, op, key, path, value)
        elif isinstance(parent, list):
            self._write_array(parent, op, key, path, value)
        else:
            raise StoreError(NOT_FOUND_ERR, f"{format_path(path)}: parent is not a container")

    def upsert_policy(self, txn: Transaction, module_id: str, raw: bytes) -> None:
        self._check_writable(txn)
        txn.policies[module_id] = bytes(raw)

    def get_policy(self, txn: Transaction, module_id: str) -> bytes:
        self._check_open(txn)
        try:
            return txn.policies[module_id]
        except KeyError:
            raise StoreError(NOT_FOUND_ERR, f"policy id {module_id!r}") from None

    def list_policies(self, txn: Transaction) -> List[str]:
        self._check_open(txn)
        return sorted(txn.policies)

    def delete_policy(self, txn: Transaction, module_id: str) -> None:
        self._check_writable(txn)
        if module_id not in txn.policies:
            raise StoreError(NOT_FOUND_ERR, f"policy id {module_id!r}")
        del txn.policies[module_id]

    def _check_open(self, txn: Transaction):
        if txn.closed:
            raise StoreError(INVALID_TXN_ERR, f"transaction {txn.id} is closed")

    def _check_writable(self, txn: Transaction):
        self._check_open(txn)
        if not txn.write:
            raise StoreError(INVALID_TXN_ERR, f"transaction {txn.id} is read-only")

    @staticmethod
    def _child(node: Any, key: str, path: Path) -> Any:
        if isinstance(node, dict):
            if key in node:
                return node[key]
        elif isinstance(node, list):
            index = InMemoryStore._index(key)
            if index is not None and index < len(node):
                return node[index]
        raise StoreError(NOT_FOUND_ERR, format_path(path))

    @staticmethod
    def _index(key: str) -> Optional[int]:
        if not key.isdigit() or (len(key) > 1 and key.startswith('0')):
            return None
        return int(key)

    @staticmethod
    def _write_object(parent: Dict[str, Any], op: str, key: str, path: Path, value: Any):
        if op == ADD_OP:
            parent[key] = copy.deepcopy(value)
        elif key not in parent:
            raise StoreError(NOT_FOUND_ERR, format_path(path))
        elif op == REPLACE_OP:
            parent[key] = copy.deepcopy(value)
        else:
            del parent[key]

    @staticmethod
    def _write_array(parent: List[Any], op: str, key: str, path: Path, value: Any):
        if op == ADD_OP and key == '-':
            parent.append(copy.deepcopy(value))
            return
        index = InMemoryStore._index(key)
        limit = len(parent) if op == ADD_OP else len(parent) - 1
        if index is None or index > limit:
            raise StoreError(NOT_FOUND_ERR, format_path(path))
        if op == ADD_OP:
            parent.insert(index, copy.deepcopy(value))
        elif op == REPLACE_OP:
            parent[index] = copy.deepcopy(value)
        else:
            del parent[index]
