"""
Identity and hashing primitives.

Identities are 32-byte values. Signer identities are ed25519 verify keys;
non-signer accounts (pools, leaderboards, vaults) get identities derived
from seeds.
"""
import nacl.signing
import nacl.exceptions
from Crypto.Hash import keccak

IDENTITY_LENGTH = 32


def generate_hash(data: bytes) -> bytes:
    """Generates a Keccak-256 hash."""
    return keccak.new(digest_bits=256, data=data).digest()


def generate_key_pair() -> tuple[nacl.signing.SigningKey, bytes]:
    """Generates an ed25519 signing key and returns it with its identity."""
    signing_key = nacl.signing.SigningKey.generate()
    return signing_key, bytes(signing_key.verify_key)


def identity_of(signing_key: nacl.signing.SigningKey) -> bytes:
    return bytes(signing_key.verify_key)


def derive_address(*seeds) -> bytes:
    """
    Derive a deterministic account identity from seeds.

    Seeds may be bytes or str. The result cannot collide with an ed25519
    key in practice, so nobody holds a signing key for it.
    """
    material = b'flash-trader:derived'
    for seed in seeds:
        if isinstance(seed, str):
            seed = seed.encode('utf-8')
        material += len(seed).to_bytes(2, 'big') + seed
    return generate_hash(material)


def sign(signing_key: nacl.signing.SigningKey, data: bytes) -> bytes:
    """Signs byte data, returning the detached 64-byte signature."""
    return signing_key.sign(data).signature


def verify_signature(identity: bytes, signature: bytes, data: bytes) -> bool:
    """Verifies a detached ed25519 signature made by `identity`."""
    try:
        nacl.signing.VerifyKey(identity).verify(data, signature)
        return True
    except (nacl.exceptions.BadSignatureError, ValueError, TypeError):
        # Covers both cryptographic failures and malformed keys
        return False


def short_id(identity: bytes) -> str:
    """Abbreviated hex form for log lines."""
    return identity.hex()[:8] if identity else '<none>'
