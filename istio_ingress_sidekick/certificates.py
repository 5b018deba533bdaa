import base64
import hashlib
import re
from typing import Final

from .errors import FormatError
from .models import Secret

TLS_CERT_KEY: Final = "tls.crt"
TLS_PRIVATE_KEY_KEY: Final = "tls.key"
IDENTITY_LENGTH: Final = 32

PEM_BLOCK: Final = re.compile(
    r"-----BEGIN (?P<label>[A-Z0-9 ]+)-----(?P<body>.*?)-----END (?P=label)-----",
    re.DOTALL,
)


def pem_blocks(data: bytes) -> list[tuple[str, list[str]]]:
    """Splits PEM data into (label, body lines) pairs, dropping blank lines inside each block."""
    # explanatory text around the blocks may be in any encoding
    text = data.decode("latin-1") if isinstance(data, bytes) else data
    blocks = []
    for match in PEM_BLOCK.finditer(text):
        lines = [line.strip() for line in match.group("body").splitlines()]
        blocks.append((match.group("label"), [line for line in lines if line]))
    return blocks


def format_pem(data: bytes) -> bytes:
    blocks: Final = pem_blocks(data)
    if not blocks:
        raise FormatError("no PEM block found")

    out: list[str] = []
    for label, lines in blocks:
        out.append(f"-----BEGIN {label}-----")
        out.extend(lines)
        out.append(f"-----END {label}-----")
    return ("\n".join(out) + "\n").encode("latin-1")


def certificate_identity(cert: bytes, key: bytes) -> str:
    m: Final = hashlib.sha256()
    m.update(format_pem(cert))
    m.update(format_pem(key))
    return m.hexdigest()[:IDENTITY_LENGTH]


def decode_tls_secret(secret: Secret) -> tuple[bytes, bytes]:
    try:
        cert = base64.b64decode(secret.data[TLS_CERT_KEY])
        key = base64.b64decode(secret.data[TLS_PRIVATE_KEY_KEY])
    except KeyError as e:
        raise FormatError(f"secret {secret.namespace}/{secret.name} has no {e.args[0]}") from e
    except ValueError as e:
        raise FormatError(f"secret {secret.namespace}/{secret.name} is not valid base64") from e
    return cert, key


def secret_identity(secret: Secret) -> str:
    try:
        return certificate_identity(*decode_tls_secret(secret))
    except FormatError as e:
        raise FormatError(f"secret {secret.namespace}/{secret.name}: {e}") from e
