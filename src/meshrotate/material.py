"""
material.py — Certificate Material Store

Root and intermediate signing identities, ordered trust bundles, and the two
shapes in which Istio keeps its live root:

  istio-ca-secret   self-signed CA generated by istiod
                    (ca-cert.pem, ca-key.pem)
  cacerts           plugged-in CA supplied by the operator
                    (root-cert.pem, ca-cert.pem, ca-key.pem, cert-chain.pem)

Both are normalized to a ``RootIdentity`` by a ``CurrentRootSource``. The
variant is resolved once, in :func:`resolve_root_source`.

Key usage is fixed:
  root          CA:true, keyCertSign, cRLSign
  intermediate  CA:true, pathlen:0, keyCertSign, cRLSign
"""

from __future__ import annotations
import datetime
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from .errors import ConfigurationNotFoundError

if TYPE_CHECKING:
    from .cluster import SecretStore

logger = logging.getLogger(__name__)

SELF_SIGNED_SECRET = "istio-ca-secret"
PLUGGED_IN_SECRET = "cacerts"

ROOT_SUBJECT = x509.Name([
    x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Istio"),
    x509.NameAttribute(NameOID.COMMON_NAME, "Root CA"),
])
INTERMEDIATE_SUBJECT = x509.Name([
    x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Istio"),
    x509.NameAttribute(NameOID.COMMON_NAME, "Intermediate CA"),
])

_CA_KEY_USAGE = x509.KeyUsage(
    digital_signature=False,
    content_commitment=False,
    key_encipherment=False,
    data_encipherment=False,
    key_agreement=False,
    key_cert_sign=True,
    crl_sign=True,
    encipher_only=False,
    decipher_only=False,
)


# ---------------------------------------------------------------------------
# PEM helpers
# ---------------------------------------------------------------------------

def load_certificates(pem: bytes) -> List[x509.Certificate]:
    """Parse every certificate in a concatenated PEM blob, preserving order.

    Raises:
        ValueError: If ``pem`` holds no certificate.
    """
    return x509.load_pem_x509_certificates(pem)


def fingerprint(cert: x509.Certificate) -> str:
    """Return the lowercase hex SHA-256 fingerprint of a certificate."""
    return cert.fingerprint(hashes.SHA256()).hex()


def _terminated(pem: bytes) -> bytes:
    return pem if pem.endswith(b"\n") else pem + b"\n"


def short_description(cert: x509.Certificate) -> str:
    """One-line summary used in operator output."""
    kind = "Root CA" if cert.issuer == cert.subject else "CA" if _is_ca(cert) else "leaf"
    return (
        f"{kind} subject={cert.subject.rfc4514_string()} "
        f"issuer={cert.issuer.rfc4514_string()} "
        f"valid={cert.not_valid_before_utc:%Y-%m-%d}..{cert.not_valid_after_utc:%Y-%m-%d} "
        f"sha256={fingerprint(cert)[:16]}"
    )


def _is_ca(cert: x509.Certificate) -> bool:
    try:
        return cert.extensions.get_extension_for_class(x509.BasicConstraints).value.ca
    except x509.ExtensionNotFound:
        return False


def _private_key_pem(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


# ---------------------------------------------------------------------------
# Identities
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RootIdentity:
    """A trust anchor.

    ``private_key_pem`` is ``None`` for a plugged-in root whose key never
    entered the cluster. For the live root (A) the signing material that istiod
    currently uses is kept alongside, since Initial and Phase1 keep signing
    with it.
    """
    identifier: str
    certificate_pem: bytes
    private_key_pem: Optional[bytes] = field(default=None, repr=False)
    signing_cert_pem: Optional[bytes] = None
    signing_key_pem: Optional[bytes] = field(default=None, repr=False)
    cert_chain_pem: Optional[bytes] = None

    @property
    def certificates(self) -> List[x509.Certificate]:
        return load_certificates(self.certificate_pem)

    @property
    def certificate(self) -> x509.Certificate:
        return self.certificates[0]

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.certificate)

    @property
    def not_before(self) -> datetime.datetime:
        return self.certificate.not_valid_before_utc

    @property
    def not_after(self) -> datetime.datetime:
        return self.certificate.not_valid_after_utc


@dataclass(frozen=True)
class IntermediateIdentity:
    issuer_id: str
    certificate_pem: bytes
    private_key_pem: bytes = field(repr=False)
    root_pem: bytes
    chain_pem: bytes

    @property
    def certificate(self) -> x509.Certificate:
        return load_certificates(self.certificate_pem)[0]

    @property
    def not_after(self) -> datetime.datetime:
        return self.certificate.not_valid_after_utc


def create_root_identity(identifier: str, validity_days: int, key_size: int = 4096) -> RootIdentity:
    """Generate a self-signed root CA.

    Args:
        identifier: Logical root name ("A" or "B").
        validity_days: Certificate lifetime in days.
        key_size: RSA modulus size in bits.

    Returns:
        RootIdentity: New root with its private key.
    """
    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(ROOT_SUBJECT)
        .issuer_name(ROOT_SUBJECT)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=validity_days))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(_CA_KEY_USAGE, critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(key, hashes.SHA256())
    )
    logger.info("Generated root %s (valid %d days, RSA %d)", identifier, validity_days, key_size)
    return RootIdentity(
        identifier=identifier,
        certificate_pem=cert.public_bytes(serialization.Encoding.PEM),
        private_key_pem=_private_key_pem(key),
    )


def create_intermediate_identity(
    issuer: RootIdentity,
    validity_days: int,
    key_size: int = 4096,
) -> IntermediateIdentity:
    """Issue an intermediate signing CA under ``issuer``.

    Raises:
        ValueError: If the issuer carries no private key.
    """
    if issuer.private_key_pem is None:
        raise ValueError(f"root {issuer.identifier} has no private key to sign with")
    issuer_key = serialization.load_pem_private_key(issuer.private_key_pem, password=None)
    issuer_cert = issuer.certificate

    key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(INTERMEDIATE_SUBJECT)
        .issuer_name(issuer_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + datetime.timedelta(days=validity_days))
        .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
        .add_extension(_CA_KEY_USAGE, critical=True)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_cert.public_key()),
            critical=False,
        )
        .sign(issuer_key, hashes.SHA256())
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    logger.info("Generated intermediate for root %s (valid %d days)", issuer.identifier, validity_days)
    return IntermediateIdentity(
        issuer_id=issuer.identifier,
        certificate_pem=cert_pem,
        private_key_pem=_private_key_pem(key),
        root_pem=issuer.certificate_pem,
        chain_pem=cert_pem + issuer.certificate_pem,
    )


# ---------------------------------------------------------------------------
# Trust bundles
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Anchor:
    identifier: str
    fingerprint: str
    subject: str


@dataclass(frozen=True)
class TrustBundle:
    """Ordered root certificates. Duplicates are kept, never merged."""
    pem: bytes
    anchors: Tuple[Anchor, ...]

    def to_pem(self) -> bytes:
        return self.pem

    def anchor_ids(self) -> List[str]:
        return [a.identifier for a in self.anchors]

    def fingerprints(self) -> List[str]:
        return [a.fingerprint for a in self.anchors]

    def certificates(self) -> List[x509.Certificate]:
        return load_certificates(self.pem)

    def labels(self) -> Dict[str, str]:
        return {a.fingerprint: a.identifier for a in self.anchors}

    @classmethod
    def from_pem(cls, pem: bytes, labels: Optional[Mapping[str, str]] = None) -> "TrustBundle":
        """Parse a bundle read from disk or the cluster.

        Anchors whose fingerprint is in ``labels`` take that identifier;
        anything else is labelled ``"?"``.

        Raises:
            ValueError: If ``pem`` holds no certificate.
        """
        labels = labels or {}
        anchors = []
        for cert in load_certificates(pem):
            fp = fingerprint(cert)
            anchors.append(Anchor(labels.get(fp, "?"), fp, cert.subject.rfc4514_string()))
        return cls(pem=pem, anchors=tuple(anchors))


def anchor_labels(roots: Sequence[RootIdentity]) -> Dict[str, str]:
    """Map each certificate fingerprint of ``roots`` to its root identifier."""
    labels: Dict[str, str] = {}
    for root in roots:
        for cert in root.certificates:
            labels.setdefault(fingerprint(cert), root.identifier)
    return labels


def build_trust_bundle(roots: Sequence[RootIdentity]) -> TrustBundle:
    """Concatenate roots in the given order. ``[A, B, B]`` yields three anchors."""
    if not roots:
        raise ValueError("a trust bundle needs at least one root")
    parts: List[bytes] = []
    anchors: List[Anchor] = []
    for root in roots:
        parts.append(_terminated(root.certificate_pem))
        for cert in root.certificates:
            anchors.append(Anchor(root.identifier, fingerprint(cert), cert.subject.rfc4514_string()))
    return TrustBundle(pem=b"".join(parts), anchors=tuple(anchors))


def _issued_by(child: x509.Certificate, parent: x509.Certificate) -> bool:
    try:
        child.verify_directly_issued_by(parent)
    except (ValueError, TypeError, InvalidSignature):
        return False
    return True


def chain_validates(chain_pem: bytes, bundle: TrustBundle) -> bool:
    """Check that a certificate chain terminates at one of ``bundle``'s anchors.

    Each certificate must be directly issued by the next one in the chain, and
    the last must either be an anchor itself or be issued by one.
    """
    try:
        chain = load_certificates(chain_pem)
    except ValueError:
        return False
    for child, parent in zip(chain, chain[1:]):
        if not _issued_by(child, parent):
            return False
    last = chain[-1]
    anchors = bundle.certificates()
    if fingerprint(last) in {fingerprint(a) for a in anchors}:
        return True
    return any(_issued_by(last, a) for a in anchors)


# ---------------------------------------------------------------------------
# Live root sources
# ---------------------------------------------------------------------------

class CurrentRootSource(Protocol):
    """Where the mesh's current root lives."""
    secret_name: str
    kind: str

    def exists(self) -> bool: ...
    def extract(self) -> RootIdentity: ...


def _require(data: Dict[str, bytes], keys: Sequence[str], secret: str) -> None:
    missing = [k for k in keys if not data.get(k)]
    if missing:
        raise ConfigurationNotFoundError(f"secret {secret} is missing fields {missing}")


class SelfSignedRootSource:
    """istiod's own CA: the signing cert is the root."""
    secret_name = SELF_SIGNED_SECRET
    kind = "self-signed"

    def __init__(self, store: "SecretStore", namespace: str):
        self.store = store
        self.namespace = namespace

    def exists(self) -> bool:
        return self.store.get_secret(self.secret_name, self.namespace) is not None

    def extract(self) -> RootIdentity:
        data = self.store.get_secret(self.secret_name, self.namespace)
        if data is None:
            raise ConfigurationNotFoundError(f"secret {self.secret_name} not found in {self.namespace}")
        _require(data, ["ca-cert.pem", "ca-key.pem"], self.secret_name)
        return RootIdentity(
            identifier="A",
            certificate_pem=data["ca-cert.pem"],
            private_key_pem=data["ca-key.pem"],
            signing_cert_pem=data["ca-cert.pem"],
            signing_key_pem=data["ca-key.pem"],
            cert_chain_pem=data["ca-cert.pem"],
        )


class PluggedInRootSource:
    """Operator-supplied CA in ``cacerts``."""
    secret_name = PLUGGED_IN_SECRET
    kind = "plugged-in"

    def __init__(self, store: "SecretStore", namespace: str):
        self.store = store
        self.namespace = namespace

    def exists(self) -> bool:
        return self.store.get_secret(self.secret_name, self.namespace) is not None

    def extract(self) -> RootIdentity:
        data = self.store.get_secret(self.secret_name, self.namespace)
        if data is None:
            raise ConfigurationNotFoundError(f"secret {self.secret_name} not found in {self.namespace}")
        _require(data, ["root-cert.pem", "ca-cert.pem", "ca-key.pem", "cert-chain.pem"], self.secret_name)
        return RootIdentity(
            identifier="A",
            certificate_pem=data["root-cert.pem"],
            signing_cert_pem=data["ca-cert.pem"],
            signing_key_pem=data["ca-key.pem"],
            cert_chain_pem=data["cert-chain.pem"],
        )


def resolve_root_source(store: "SecretStore", namespace: str) -> CurrentRootSource:
    """Pick the live root representation.

    ``istio-ca-secret`` is checked first. The rotation never writes to it, so
    when it exists it still holds root A in every phase.

    Raises:
        ConfigurationNotFoundError: If neither secret exists.
    """
    for source in (SelfSignedRootSource(store, namespace), PluggedInRootSource(store, namespace)):
        if source.exists():
            logger.info("Found %s CA secret (%s)", source.kind, source.secret_name)
            return source
    raise ConfigurationNotFoundError(
        f"expected either '{SELF_SIGNED_SECRET}' (self-signed) or "
        f"'{PLUGGED_IN_SECRET}' (plugged-in) in namespace {namespace}"
    )


def extract_current_root_identity(source: CurrentRootSource) -> RootIdentity:
    root = source.extract()
    logger.info("Current root: %s", short_description(root.certificate))
    return root
