"""
Merkle Patricia state trie over the ledger database.

Node writes are buffered in memory and reach the database only through
`flush(batch)`, so a trie that is dropped before flushing leaves no trace.
The root hash is the commitment to every account in the ledger.
"""
import rlp
from flash_trader.crypto import generate_hash

BLANK_NODE = b''
BLANK_ROOT = generate_hash(rlp.encode(BLANK_NODE))


def bytes_to_nibbles(b: bytes) -> tuple[int, ...]:
    res = []
    for byte in b:
        res.append(byte >> 4)
        res.append(byte & 15)
    return tuple(res)


def nibbles_to_bytes(nibbles: tuple[int, ...]) -> bytes:
    if len(nibbles) % 2:
        raise ValueError("Nibbles must be of even length")
    return bytes((nibbles[i] << 4) + nibbles[i + 1] for i in range(0, len(nibbles), 2))


def hex_prefix_encode(nibbles: tuple[int, ...], is_leaf: bool) -> bytes:
    """Hex-prefix encode a nibble path; the flag marks leaf nodes."""
    flag = (2 if is_leaf else 0) + (len(nibbles) % 2)
    if flag % 2 == 1:
        return nibbles_to_bytes((flag,) + tuple(nibbles))
    return nibbles_to_bytes((flag, 0) + tuple(nibbles))


def hex_prefix_decode(encoded: bytes) -> tuple[tuple[int, ...], bool]:
    nibbles = bytes_to_nibbles(encoded)
    flag = nibbles[0]
    is_leaf = flag >= 2
    if flag % 2 == 1:
        return nibbles[1:], is_leaf
    return nibbles[2:], is_leaf


def _common_prefix_length(a: tuple, b: tuple) -> int:
    n = 0
    for x, y in zip(a, b):
        if x != y:
            break
        n += 1
    return n


class StateTrie:
    def __init__(self, db, root_hash: bytes = None):
        self.db = db
        self.root_hash = root_hash or BLANK_ROOT
        self._pending: dict[bytes, bytes] = {}

    @property
    def dirty(self) -> bool:
        return bool(self._pending)

    def get(self, key: bytes) -> bytes | None:
        """Get a value by key."""
        return self._get(self.root_hash, bytes_to_nibbles(key))

    def set(self, key: bytes, value: bytes):
        """Set a key-value pair."""
        if not value:
            raise ValueError("Empty values are not stored in the state trie")
        self.root_hash = self._set(self.root_hash, bytes_to_nibbles(key), value)

    def flush(self, batch) -> int:
        """Write buffered nodes into a database batch. Returns the node count."""
        count = len(self._pending)
        for node_hash, encoded in self._pending.items():
            batch.put(node_hash, encoded)
        self._pending.clear()
        return count

    def _load_node(self, node_hash: bytes):
        if node_hash == BLANK_ROOT or not node_hash:
            return None
        encoded = self._pending.get(node_hash)
        if encoded is None:
            encoded = self.db.get(node_hash)
        if not encoded:
            return None
        return rlp.decode(encoded)

    def _put_node(self, node) -> bytes:
        encoded = rlp.encode(node)
        node_hash = generate_hash(encoded)
        self._pending[node_hash] = encoded
        return node_hash

    def _new_leaf(self, path: tuple, value: bytes) -> bytes:
        return self._put_node([hex_prefix_encode(path, is_leaf=True), value])

    def _get(self, node_hash: bytes, path: tuple[int, ...]) -> bytes | None:
        node = self._load_node(node_hash)
        if not node:
            return None

        if len(node) == 2:
            key, value = node
            node_path, is_leaf = hex_prefix_decode(key)
            if is_leaf:
                return value if tuple(node_path) == path else None
            if path[:len(node_path)] == tuple(node_path):
                return self._get(value, path[len(node_path):])
            return None

        if len(node) == 17:
            if not path:
                return node[16] or None
            return self._get(node[path[0]], path[1:])

        raise ValueError(f"Invalid node structure: {len(node)} elements")

    def _set(self, node_hash: bytes, path: tuple[int, ...], value: bytes) -> bytes:
        node = self._load_node(node_hash)
        if not node:
            return self._new_leaf(path, value)

        if len(node) == 17:
            node = list(node)
            if not path:
                node[16] = value
            else:
                child = node[path[0]] or BLANK_ROOT
                node[path[0]] = self._set(child, path[1:], value)
            return self._put_node(node)

        if len(node) != 2:
            raise ValueError(f"Invalid node structure: {len(node)} elements")

        node_key, child_or_value = node
        node_path, is_leaf = hex_prefix_decode(node_key)
        node_path = tuple(node_path)
        shared = _common_prefix_length(path, node_path)

        if shared == len(node_path) == len(path):
            if is_leaf:
                return self._new_leaf(path, value)
            return self._put_node([node_key, self._set(child_or_value, (), value)])

        if shared == len(node_path) and not is_leaf:
            # Extension fully matched: descend
            return self._put_node([node_key, self._set(child_or_value, path[shared:], value)])

        # Split into a branch at the first differing nibble
        branch = [BLANK_NODE] * 17

        remaining_old = node_path[shared + 1:]
        if shared == len(node_path):
            # Old leaf ends here; its value moves to the branch slot
            branch[16] = child_or_value
        elif is_leaf:
            branch[node_path[shared]] = self._new_leaf(remaining_old, child_or_value)
        elif remaining_old:
            branch[node_path[shared]] = self._put_node(
                [hex_prefix_encode(remaining_old, is_leaf=False), child_or_value])
        else:
            branch[node_path[shared]] = child_or_value

        if shared == len(path):
            branch[16] = value
        else:
            branch[path[shared]] = self._new_leaf(path[shared + 1:], value)

        branch_hash = self._put_node(branch)
        if shared > 0:
            return self._put_node([hex_prefix_encode(path[:shared], is_leaf=False), branch_hash])
        return branch_hash
