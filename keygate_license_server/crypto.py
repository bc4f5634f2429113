import base64
import binascii
import hashlib
import hmac
import os
from typing import Iterable, Iterator, Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

NONCE_SIZE = 16

_OAEP = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA256()),
    algorithm=hashes.SHA256(),
    label=None,
)


class SessionKeyError(ValueError):
    pass


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("utf-8")


def _b64decode(s: str) -> bytes:
    # accept url-safe alphabet and missing padding, clients differ here
    s = s.strip().replace("-", "+").replace("_", "/")
    pad = "=" * (-len(s) % 4)
    return base64.b64decode(s + pad, validate=True)


def generate_hmac(value: str, secret: Optional[str] = None) -> str:
    if secret is None:
        secret = os.environ.get("HMAC_SECRET", "")
    if not secret:
        raise RuntimeError("HMAC_SECRET env var missing.")

    return hmac.new(secret.encode("utf-8"), value.encode("utf-8"), hashlib.sha256).hexdigest()


def license_key_lookup(license_key: str, team_id: str, secret: Optional[str] = None) -> str:
    return generate_hmac(f"{license_key}:{team_id}", secret)


def generate_key_pair(key_size: int = 2048) -> Tuple[str, str]:
    """Returns (public_pem, private_pem) for a fresh team key pair."""
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return public_pem.decode("utf-8"), private_pem.decode("utf-8")


def public_encrypt(data: bytes, public_key_pem: str) -> str:
    public_key = serialization.load_pem_public_key(public_key_pem.encode("utf-8"))
    return _b64(public_key.encrypt(data, _OAEP))


def private_decrypt(ciphertext: str, private_key_pem: str) -> bytes:
    """
    Decrypts a client session key. Every failure mode (bad base64, wrong key,
    corrupted ciphertext) surfaces as SessionKeyError.
    """
    try:
        raw = _b64decode(ciphertext)
    except (binascii.Error, ValueError) as e:
        raise SessionKeyError("Session key is not valid base64") from e

    try:
        private_key = serialization.load_pem_private_key(private_key_pem.encode("utf-8"), password=None)
        plain = private_key.decrypt(raw, _OAEP)
    except ValueError as e:
        raise SessionKeyError("Session key could not be decrypted") from e

    if not plain:
        raise SessionKeyError("Session key is empty")
    return plain


def sign_challenge(challenge: str, private_key_pem: str) -> str:
    private_key = serialization.load_pem_private_key(private_key_pem.encode("utf-8"), password=None)
    sig = private_key.sign(challenge.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
    return _b64(sig)


def verify_challenge(challenge: str, signature: str, public_key_pem: str) -> bool:
    public_key = serialization.load_pem_public_key(public_key_pem.encode("utf-8"))
    try:
        public_key.verify(_b64decode(signature), challenge.encode("utf-8"), padding.PKCS1v15(), hashes.SHA256())
    except (InvalidSignature, binascii.Error, ValueError):
        return False
    return True


def _stream_key(session_key_hex: str) -> bytes:
    try:
        raw = bytes.fromhex(session_key_hex)
    except ValueError as e:
        raise SessionKeyError("Session key must be hex") from e
    return hashlib.sha256(raw).digest()


def create_encryption_stream(session_key_hex: str):
    """
    AES-256-CTR over a chunk iterator. The key is SHA-256 of the raw session key;
    the random nonce is emitted as the first chunk so the client can rebuild the cipher.
    """
    key = _stream_key(session_key_hex)

    def transform(chunks: Iterable[bytes]) -> Iterator[bytes]:
        nonce = os.urandom(NONCE_SIZE)
        encryptor = Cipher(algorithms.AES(key), modes.CTR(nonce)).encryptor()
        yield nonce
        for chunk in chunks:
            if chunk:
                yield encryptor.update(chunk)
        tail = encryptor.finalize()
        if tail:
            yield tail

    return transform


def create_decryption_stream(session_key_hex: str):
    key = _stream_key(session_key_hex)

    def transform(chunks: Iterable[bytes]) -> Iterator[bytes]:
        buf = b""
        decryptor = None
        for chunk in chunks:
            if decryptor is None:
                buf += chunk
                if len(buf) < NONCE_SIZE:
                    continue
                nonce, chunk = buf[:NONCE_SIZE], buf[NONCE_SIZE:]
                decryptor = Cipher(algorithms.AES(key), modes.CTR(nonce)).decryptor()
            if chunk:
                yield decryptor.update(chunk)
        if decryptor is None:
            raise ValueError("Encrypted stream ended before the nonce")
        tail = decryptor.finalize()
        if tail:
            yield tail

    return transform
