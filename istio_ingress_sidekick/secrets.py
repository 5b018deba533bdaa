import base64
from typing import Final

from .certificates import TLS_CERT_KEY, TLS_PRIVATE_KEY_KEY, decode_tls_secret, format_pem
from .models import (
    CERTIFICATE_IDENTITY_LABEL,
    MANAGED_LABEL,
    KubernetesResourceMetadata,
    Secret,
)

TLS_SECRET_TYPE: Final = "kubernetes.io/tls"


def make_mirror_secret(origin: Secret, identity: str, namespace: str) -> Secret:
    cert, key = decode_tls_secret(origin)
    return Secret(
        metadata=KubernetesResourceMetadata(
            name=identity,
            namespace=namespace,
            labels={
                MANAGED_LABEL: "true",
                CERTIFICATE_IDENTITY_LABEL: identity,
            },
        ),
        type=TLS_SECRET_TYPE,
        data={
            TLS_CERT_KEY: base64.b64encode(format_pem(cert)).decode(),
            TLS_PRIVATE_KEY_KEY: base64.b64encode(format_pem(key)).decode(),
        },
    )
