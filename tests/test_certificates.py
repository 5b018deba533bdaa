import base64

import pytest

from conftest import pem
from istio_ingress_sidekick.certificates import (
    IDENTITY_LENGTH,
    certificate_identity,
    decode_tls_secret,
    format_pem,
    pem_blocks,
    secret_identity,
)
from istio_ingress_sidekick.errors import FormatError
from istio_ingress_sidekick.models import KubernetesResourceMetadata, Secret


def with_blank_lines(data: bytes) -> bytes:
    lines = data.decode().splitlines()
    noisy = []
    for line in lines:
        noisy.extend([line, "", "   "])
    return ("\n\n".join(noisy) + "\n\n").encode()


def test_identity_ignores_blank_lines():
    cert, key = pem("CERTIFICATE", "a"), pem("PRIVATE KEY", "a")
    assert certificate_identity(cert, key) == certificate_identity(with_blank_lines(cert), with_blank_lines(key))


def test_identity_is_fixed_length_hex():
    identity = certificate_identity(pem("CERTIFICATE", "a"), pem("PRIVATE KEY", "a"))
    assert len(identity) == IDENTITY_LENGTH
    int(identity, 16)


def test_identity_depends_on_cert_and_key():
    cert, key = pem("CERTIFICATE", "a"), pem("PRIVATE KEY", "a")
    assert certificate_identity(cert, key) != certificate_identity(pem("CERTIFICATE", "b"), key)
    assert certificate_identity(cert, key) != certificate_identity(cert, pem("PRIVATE KEY", "b"))


def test_format_pem_keeps_every_block_in_order():
    chain = pem("CERTIFICATE", "leaf") + b"\n\n" + pem("CERTIFICATE", "intermediate")
    formatted = format_pem(with_blank_lines(chain))

    blocks = pem_blocks(formatted)
    assert len(blocks) == 2
    assert blocks == pem_blocks(chain)
    assert formatted.index(pem("CERTIFICATE", "leaf").splitlines()[1]) < formatted.index(
        pem("CERTIFICATE", "intermediate").splitlines()[1]
    )
    assert b"\n\n" not in formatted


def test_format_pem_strips_indentation():
    indented = b"  -----BEGIN CERTIFICATE-----\n    QUJD\n  REVG  \n-----END CERTIFICATE-----\n"
    assert format_pem(indented) == b"-----BEGIN CERTIFICATE-----\nQUJD\nREVG\n-----END CERTIFICATE-----\n"


def test_format_pem_requires_a_block():
    with pytest.raises(FormatError):
        format_pem(b"not a certificate")


def test_identity_ignores_non_ascii_text_around_blocks():
    cert, key = pem("CERTIFICATE", "a"), pem("PRIVATE KEY", "a")
    annotated = "Subject: CN=café.example.com\n".encode() + cert
    assert certificate_identity(annotated, key) == certificate_identity(cert, key)


def test_non_ascii_garbage_is_a_format_error():
    with pytest.raises(FormatError):
        certificate_identity(b"\xff\xfe garbage", b"\xff")


def test_decode_tls_secret_missing_key():
    secret = Secret(
        metadata=KubernetesResourceMetadata(name="cert", namespace="default"),
        data={"tls.crt": base64.b64encode(pem("CERTIFICATE", "a")).decode()},
    )
    with pytest.raises(FormatError, match="tls.key"):
        decode_tls_secret(secret)


def test_secret_identity_matches_certificate_identity(tls_secret):
    secret = tls_secret("cert", seed="a")
    assert secret_identity(secret) == certificate_identity(pem("CERTIFICATE", "a"), pem("PRIVATE KEY", "a"))


def test_secret_identity_rejects_garbage():
    secret = Secret(
        metadata=KubernetesResourceMetadata(name="cert", namespace="default"),
        data={"tls.crt": base64.b64encode(b"nope").decode(), "tls.key": base64.b64encode(b"nope").decode()},
    )
    with pytest.raises(FormatError):
        secret_identity(secret)
