"""
A persistent B-tree mapping u64 keys to bounded byte values.

The tree lives entirely inside one Memory: a small header at address 0, an
Allocator right after it, and one fixed-size chunk per node. Every node is
read and written as a whole, so a node on disk is always either its old or
its new image.
"""
from __future__ import annotations

import logging
import struct
from bisect import bisect_left
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple

from .allocator import Allocator
from .errors import CorruptedMemory, EncodingBoundExceeded
from .memory import Memory, safe_write

logger = logging.getLogger(__name__)

MAGIC = b"BTR"
NODE_MAGIC = b"BTN"
LAYOUT_VERSION = 1
NULL = 0

B = 6
CAPACITY = 2 * B - 1

LEAF = 0
INTERNAL = 1

ALLOCATOR_OFFSET = 64

# magic, version, max value size, root address, length
_HEADER = struct.Struct("<3sBIQQ")
# magic, node type, number of entries
_NODE_HEADER = struct.Struct("<3sBH2x")
_ENTRY_HEADER = struct.Struct("<QI")
_ADDRESS = struct.Struct("<Q")


@dataclass
class Node:
    address: int
    node_type: int
    keys: List[int] = field(default_factory=list)
    values: List[bytes] = field(default_factory=list)
    children: List[int] = field(default_factory=list)

    def is_leaf(self) -> bool:
        return self.node_type == LEAF

    def is_full(self) -> bool:
        return len(self.keys) >= CAPACITY


# PUBLIC_INTERFACE
class BTreeMap:
    """
    Ordered map from u64 keys to byte values of at most `max_value_size` bytes.

    Iteration yields entries in ascending key order. Lookups, inserts and
    removals touch a number of nodes proportional to the tree depth.
    """

    def __init__(self, memory: Memory, max_value_size: int) -> None:
        self._memory = memory
        if memory.size() == 0:
            self._max_value_size = max_value_size
            self._root = NULL
            self._length = 0
            self._save_header()
            self._allocator = Allocator.new(memory, ALLOCATOR_OFFSET, self._node_size())
        else:
            magic, version, stored_max, root, length = _HEADER.unpack(
                memory.read(0, _HEADER.size)
            )
            if magic != MAGIC or version != LAYOUT_VERSION:
                raise CorruptedMemory("no B-tree found in memory")
            if stored_max != max_value_size:
                raise CorruptedMemory(
                    f"B-tree was created with max_value_size={stored_max}, not {max_value_size}"
                )
            self._max_value_size = stored_max
            self._root = root
            self._length = length
            self._allocator = Allocator(memory, ALLOCATOR_OFFSET)

    # ---- layout ----

    def _entry_size(self) -> int:
        return _ENTRY_HEADER.size + self._max_value_size

    def _node_size(self) -> int:
        return (
            _NODE_HEADER.size
            + CAPACITY * self._entry_size()
            + (CAPACITY + 1) * _ADDRESS.size
        )

    def _save_header(self) -> None:
        safe_write(
            self._memory,
            0,
            _HEADER.pack(MAGIC, LAYOUT_VERSION, self._max_value_size, self._root, self._length),
        )

    def _load(self, address: int) -> Node:
        buf = self._memory.read(address, self._node_size())
        magic, node_type, count = _NODE_HEADER.unpack_from(buf, 0)
        if magic != NODE_MAGIC or count > CAPACITY:
            raise CorruptedMemory(f"no B-tree node at address {address}")
        node = Node(address, node_type)
        pos = _NODE_HEADER.size
        for _ in range(count):
            key, size = _ENTRY_HEADER.unpack_from(buf, pos)
            start = pos + _ENTRY_HEADER.size
            node.keys.append(key)
            node.values.append(bytes(buf[start:start + size]))
            pos += self._entry_size()
        if node_type == INTERNAL:
            pos = _NODE_HEADER.size + CAPACITY * self._entry_size()
            for i in range(count + 1):
                node.children.append(_ADDRESS.unpack_from(buf, pos + i * _ADDRESS.size)[0])
        return node

    def _save(self, node: Node) -> None:
        buf = bytearray(self._node_size())
        _NODE_HEADER.pack_into(buf, 0, NODE_MAGIC, node.node_type, len(node.keys))
        pos = _NODE_HEADER.size
        for key, value in zip(node.keys, node.values):
            _ENTRY_HEADER.pack_into(buf, pos, key, len(value))
            start = pos + _ENTRY_HEADER.size
            buf[start:start + len(value)] = value
            pos += self._entry_size()
        pos = _NODE_HEADER.size + CAPACITY * self._entry_size()
        for i, child in enumerate(node.children):
            _ADDRESS.pack_into(buf, pos + i * _ADDRESS.size, child)
        safe_write(self._memory, node.address, bytes(buf))

    def _new_node(self, node_type: int) -> Node:
        return Node(self._allocator.allocate(), node_type)

    # ---- lookups ----

    def _find(self, key: int) -> Tuple[Optional[Node], int, int]:
        """Return (node holding key or None, index in node, depth walked)."""
        address = self._root
        depth = 0
        while address != NULL:
            node = self._load(address)
            depth += 1
            i = bisect_left(node.keys, key)
            if i < len(node.keys) and node.keys[i] == key:
                return node, i, depth
            if node.is_leaf():
                break
            address = node.children[i]
        return None, 0, depth

    def get(self, key: int) -> Optional[bytes]:
        node, i, _ = self._find(key)
        return node.values[i] if node is not None else None

    def __contains__(self, key: int) -> bool:
        return self._find(key)[0] is not None

    def __len__(self) -> int:
        return self._length

    def items(self) -> Iterator[Tuple[int, bytes]]:
        if self._root != NULL:
            yield from self._iter_node(self._root)

    def keys(self) -> Iterator[int]:
        for key, _ in self.items():
            yield key

    def __iter__(self) -> Iterator[int]:
        return self.keys()

    def _iter_node(self, address: int) -> Iterator[Tuple[int, bytes]]:
        node = self._load(address)
        for i, (key, value) in enumerate(zip(node.keys, node.values)):
            if not node.is_leaf():
                yield from self._iter_node(node.children[i])
            yield key, value
        if not node.is_leaf():
            yield from self._iter_node(node.children[-1])

    # ---- insertion ----

    def reserve_for_insert(self, key: int) -> None:
        """
        Grow the memory so that inserting `key` cannot run out of space.

        Raises:
            StorageExhausted if that room is not available; nothing else is
            written in that case.
        """
        node, _, depth = self._find(key)
        if node is None:
            # A split on every level plus a new root is the worst case.
            self._allocator.reserve(depth + 1)

    def insert(self, key: int, value: bytes) -> Optional[bytes]:
        """
        Insert or overwrite `key`. Return the previous value, if any.

        Raises:
            EncodingBoundExceeded if value is longer than max_value_size.
            StorageExhausted if the memory cannot hold the new nodes; nothing
            is written in that case.
        """
        if len(value) > self._max_value_size:
            raise EncodingBoundExceeded(len(value), self._max_value_size)

        node, i, depth = self._find(key)
        if node is not None:
            previous = node.values[i]
            node.values[i] = value
            self._save(node)
            return previous

        self._allocator.reserve(depth + 1)

        if self._root == NULL:
            root = self._new_node(LEAF)
            self._root = root.address
        else:
            root = self._load(self._root)
            if root.is_full():
                new_root = self._new_node(INTERNAL)
                new_root.children.append(root.address)
                self._split_child(new_root, 0, root)
                self._root = new_root.address
                root = new_root

        self._insert_nonfull(root, key, value)
        self._length += 1
        self._save_header()
        return None

    def _split_child(self, parent: Node, i: int, child: Node) -> Node:
        sibling = self._new_node(child.node_type)
        sibling.keys = child.keys[B:]
        sibling.values = child.values[B:]
        if not child.is_leaf():
            sibling.children = child.children[B:]
            child.children = child.children[:B]

        parent.keys.insert(i, child.keys[B - 1])
        parent.values.insert(i, child.values[B - 1])
        parent.children.insert(i + 1, sibling.address)
        child.keys = child.keys[:B - 1]
        child.values = child.values[:B - 1]

        self._save(sibling)
        self._save(child)
        self._save(parent)
        return sibling

    def _insert_nonfull(self, node: Node, key: int, value: bytes) -> None:
        while True:
            i = bisect_left(node.keys, key)
            if node.is_leaf():
                node.keys.insert(i, key)
                node.values.insert(i, value)
                self._save(node)
                return
            child = self._load(node.children[i])
            if child.is_full():
                sibling = self._split_child(node, i, child)
                if key > node.keys[i]:
                    child = sibling
            node = child

    # ---- removal ----

    def remove(self, key: int) -> Optional[bytes]:
        """Remove `key` and return its value, or None if it is absent."""
        if self._find(key)[0] is None:
            return None

        removed = self._remove_from(self._load(self._root), key)

        root = self._load(self._root)
        if not root.keys:
            self._allocator.deallocate(root.address)
            self._root = NULL if root.is_leaf() else root.children[0]
        self._length -= 1
        self._save_header()
        return removed

    def _remove_from(self, node: Node, key: int) -> bytes:
        # Every node entered here, except the root, holds at least B keys.
        while True:
            i = bisect_left(node.keys, key)
            found = i < len(node.keys) and node.keys[i] == key

            if node.is_leaf():
                node.keys.pop(i)
                value = node.values.pop(i)
                self._save(node)
                return value

            if found:
                value = node.values[i]
                left = self._load(node.children[i])
                if len(left.keys) >= B:
                    k, v = self._last_entry(left)
                    node.keys[i], node.values[i] = k, v
                    self._save(node)
                    self._remove_from(left, k)
                    return value
                right = self._load(node.children[i + 1])
                if len(right.keys) >= B:
                    k, v = self._first_entry(right)
                    node.keys[i], node.values[i] = k, v
                    self._save(node)
                    self._remove_from(right, k)
                    return value
                self._merge(node, i, left, right)
                node = left
                continue

            child = self._load(node.children[i])
            if len(child.keys) < B:
                child = self._fill(node, i, child)
            node = child

    def _last_entry(self, node: Node) -> Tuple[int, bytes]:
        while not node.is_leaf():
            node = self._load(node.children[-1])
        return node.keys[-1], node.values[-1]

    def _first_entry(self, node: Node) -> Tuple[int, bytes]:
        while not node.is_leaf():
            node = self._load(node.children[0])
        return node.keys[0], node.values[0]

    def _fill(self, parent: Node, i: int, child: Node) -> Node:
        """Bring children[i] up to B keys by borrowing from or merging with a sibling."""
        if i > 0:
            left = self._load(parent.children[i - 1])
            if len(left.keys) >= B:
                child.keys.insert(0, parent.keys[i - 1])
                child.values.insert(0, parent.values[i - 1])
                parent.keys[i - 1] = left.keys.pop()
                parent.values[i - 1] = left.values.pop()
                if not left.is_leaf():
                    child.children.insert(0, left.children.pop())
                self._save(left)
                self._save(child)
                self._save(parent)
                return child

        if i < len(parent.children) - 1:
            right = self._load(parent.children[i + 1])
            if len(right.keys) >= B:
                child.keys.append(parent.keys[i])
                child.values.append(parent.values[i])
                parent.keys[i] = right.keys.pop(0)
                parent.values[i] = right.values.pop(0)
                if not right.is_leaf():
                    child.children.append(right.children.pop(0))
                self._save(right)
                self._save(child)
                self._save(parent)
                return child
            self._merge(parent, i, child, right)
            return child

        left = self._load(parent.children[i - 1])
        self._merge(parent, i - 1, left, child)
        return left

    def _merge(self, parent: Node, i: int, left: Node, right: Node) -> None:
        """Fold parent.keys[i] and children[i + 1] into children[i]."""
        left.keys.append(parent.keys.pop(i))
        left.values.append(parent.values.pop(i))
        left.keys.extend(right.keys)
        left.values.extend(right.values)
        left.children.extend(right.children)
        parent.children.pop(i + 1)
        self._save(left)
        self._save(parent)
        self._allocator.deallocate(right.address)
