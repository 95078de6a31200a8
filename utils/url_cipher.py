import hashlib
import logging
import uuid
from urllib.parse import urlsplit, urlunsplit, parse_qsl, urlencode

from Crypto.Cipher import AES
from Crypto.Protocol.KDF import scrypt
from Crypto.Random import get_random_bytes

from services.errors import TamperError

logger = logging.getLogger(__name__)

KEY_SALT = b"salt"
NONCE_SIZE = 16
TAG_SIZE = 16
SENSITIVE_PARAMS = ("token", "key", "signature", "policy")


class UrlCipher:
    """AES-256-GCM concealment of origin URLs.

    Ciphertexts have the form ``<nonce>:<tag>:<payload>``, each part hex
    encoded. A fresh nonce is drawn for every call, so the same URL never
    produces the same ciphertext twice.
    """

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("UrlCipher requires a non-empty secret")
        self._key = scrypt(secret.encode("utf-8"), KEY_SALT, key_len=32, N=2**14, r=8, p=1)

    def conceal(self, url: str) -> str:
        nonce = get_random_bytes(NONCE_SIZE)
        cipher = AES.new(self._key, AES.MODE_GCM, nonce=nonce, mac_len=TAG_SIZE)
        payload, tag = cipher.encrypt_and_digest(url.encode("utf-8"))
        return f"{nonce.hex()}:{tag.hex()}:{payload.hex()}"

    def reveal(self, ciphertext: str) -> str:
        """Decrypts a concealed URL, raising TamperError on any failure."""
        if not isinstance(ciphertext, str):
            raise TamperError()
        parts = ciphertext.split(":")
        if len(parts) != 3:
            raise TamperError()
        try:
            nonce, tag, payload = (bytes.fromhex(part) for part in parts)
            if len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE:
                raise ValueError("bad nonce or tag length")
            cipher = AES.new(self._key, AES.MODE_GCM, nonce=nonce, mac_len=TAG_SIZE)
            return cipher.decrypt_and_verify(payload, tag).decode("utf-8")
        except ValueError as e:
            # MAC failures, bad hex and bad UTF-8 all end up here
            logger.warning(f"🛡️ Rejected concealed URL: {e}")
            raise TamperError() from None


def generate_stream_id(secret: str) -> str:
    """One-way stream identifier: a random value salted with the secret, hashed."""
    raw_id = str(uuid.uuid4())
    return hashlib.sha256((raw_id + secret).encode("utf-8")).hexdigest()[:32]


def mask_url(url: str) -> str:
    """Hides sensitive query parameters before a URL is logged or displayed."""
    try:
        parts = urlsplit(url)
        if not parts.query:
            return url
        query = [
            (name, "***" if name.lower() in SENSITIVE_PARAMS else value)
            for name, value in parse_qsl(parts.query, keep_blank_values=True)
        ]
        return urlunsplit(parts._replace(query=urlencode(query, safe="*")))
    except (TypeError, ValueError):
        return "invalid-url"
