from datetime import datetime, timedelta, timezone
from typing import Optional, Dict

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa, ec, ed25519, ed448, padding
from cryptography.x509.oid import NameOID

from lightcrl.models.key import KeyAlgorithm


# asn1crypto SignedDigestAlgorithm names -> hash used with RSA / ECDSA
_DIGESTS = {
    "sha256_rsa": hashes.SHA256,
    "sha384_rsa": hashes.SHA384,
    "sha512_rsa": hashes.SHA512,
    "sha256_ecdsa": hashes.SHA256,
    "sha384_ecdsa": hashes.SHA384,
    "sha512_ecdsa": hashes.SHA512,
}


def _build_subject_name(subject: Dict[str, str]) -> x509.Name:
    attrs = []
    mapping = [
        ("C", NameOID.COUNTRY_NAME),
        ("ST", NameOID.STATE_OR_PROVINCE_NAME),
        ("L", NameOID.LOCALITY_NAME),
        ("O", NameOID.ORGANIZATION_NAME),
        ("OU", NameOID.ORGANIZATIONAL_UNIT_NAME),
        ("CN", NameOID.COMMON_NAME),
    ]
    for key, oid in mapping:
        value = subject.get(key)
        if value:
            attrs.append(x509.NameAttribute(oid, value))
    return x509.Name(attrs)


def generate_key_pair(
    algorithm: KeyAlgorithm, key_size: Optional[int] = None, curve: Optional[str] = None
) -> tuple:
    if algorithm == KeyAlgorithm.RSA:
        if not key_size or key_size not in [2048, 4096]:
            key_size = 2048
        private_key = rsa.generate_private_key(
            public_exponent=65537,
            key_size=key_size,
            backend=default_backend(),
        )
    elif algorithm == KeyAlgorithm.ECDSA:
        ec_curve = ec.SECP384R1() if curve == "P-384" else ec.SECP256R1()
        private_key = ec.generate_private_key(curve=ec_curve, backend=default_backend())
    elif algorithm == KeyAlgorithm.EdDSA:
        if key_size == 448:
            private_key = ed448.Ed448PrivateKey.generate()
        else:
            private_key = ed25519.Ed25519PrivateKey.generate()
    else:
        raise ValueError(f"Unsupported algorithm: {algorithm}")

    return private_key, private_key.public_key()


def _sign_hash(private_key) -> Optional[hashes.HashAlgorithm]:
    if isinstance(private_key, (ed25519.Ed25519PrivateKey, ed448.Ed448PrivateKey)):
        return None
    return hashes.SHA256()


def create_ca_certificate(
    private_key,
    subject: Dict[str, str],
    validity_days: int = 3650,
    not_before: Optional[datetime] = None,
) -> bytes:
    """Self-signed CA certificate with the key usages a CRL issuer needs."""
    subject_name = _build_subject_name(subject)
    now = not_before or datetime.now(timezone.utc).replace(tzinfo=None)

    builder = (
        x509.CertificateBuilder()
        .subject_name(subject_name)
        .issuer_name(subject_name)
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=validity_days))
        .serial_number(x509.random_serial_number())
        .public_key(private_key.public_key())
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=True,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(private_key.public_key()), critical=False
        )
    )

    certificate = builder.sign(private_key, _sign_hash(private_key))
    return certificate.public_bytes(serialization.Encoding.DER)


def load_certificate(cert_der: bytes) -> x509.Certificate:
    return x509.load_der_x509_certificate(cert_der, default_backend())


def key_identifier(public_key) -> bytes:
    """RFC 5280 method 1 key identifier, as used for authorityKeyIdentifier."""
    return x509.SubjectKeyIdentifier.from_public_key(public_key).digest


def signature_algorithm_for_key(private_key) -> str:
    if isinstance(private_key, rsa.RSAPrivateKey):
        return "sha256_rsa"
    if isinstance(private_key, ec.EllipticCurvePrivateKey):
        return "sha256_ecdsa"
    if isinstance(private_key, ed25519.Ed25519PrivateKey):
        return "ed25519"
    if isinstance(private_key, ed448.Ed448PrivateKey):
        return "ed448"
    raise ValueError(f"Unsupported CA key type: {type(private_key).__name__}")


def sign_payload(private_key, payload: bytes, algorithm: str) -> bytes:
    if algorithm in ("ed25519", "ed448"):
        return private_key.sign(payload)
    if algorithm not in _DIGESTS:
        raise ValueError(f"Unsupported signature algorithm: {algorithm}")
    digest = _DIGESTS[algorithm]()
    if algorithm.endswith("_rsa"):
        return private_key.sign(payload, padding.PKCS1v15(), digest)
    return private_key.sign(payload, ec.ECDSA(digest))


def verify_signature(public_key, signature: bytes, payload: bytes, algorithm: str) -> bool:
    try:
        if algorithm in ("ed25519", "ed448"):
            public_key.verify(signature, payload)
        elif algorithm.endswith("_rsa") and algorithm in _DIGESTS:
            public_key.verify(signature, payload, padding.PKCS1v15(), _DIGESTS[algorithm]())
        elif algorithm.endswith("_ecdsa") and algorithm in _DIGESTS:
            public_key.verify(signature, payload, ec.ECDSA(_DIGESTS[algorithm]()))
        else:
            return False
    except (InvalidSignature, TypeError, ValueError):
        # TypeError/ValueError: key type does not match the algorithm
        return False
    return True


def private_key_to_pem(private_key) -> str:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()


def load_private_key_pem(pem_data: str, password: Optional[str] = None):
    return serialization.load_pem_private_key(
        pem_data.encode(),
        password=password.encode() if password else None,
        backend=default_backend(),
    )


def hex_serial(serial_number: int) -> str:
    return format(serial_number, "X")


def parse_hex_serial(serial: str) -> int:
    return int(serial, 16)

