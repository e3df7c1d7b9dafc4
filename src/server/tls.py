"""Mutual-TLS authority for the controller and its nodes.

The authority is a self-signed CA whose key and certificate live together
in one PEM file (default secrets/fleet.pem). It issues leaf certificates
for both sides of every connection: nodes present one as servers, the
controller presents one as client, and each side trusts only this CA.

Nodes never receive the CA key. They get a bundle of the CA certificate
plus a node certificate and key, which Authority.load() also accepts.

Key material is generated with the openssl binary.
"""

import logging
import os
import re
import secrets
import ssl
import subprocess
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import requests
from requests.adapters import HTTPAdapter

from errors import ConfigurationError, FleetError

logger = logging.getLogger(__name__)

DEFAULT_CA_DAYS = 3650
DEFAULT_CERT_DAYS = 825
DEFAULT_KEY_SIZE = 2048
CA_COMMON_NAME = 'fleet-authority'
NODE_COMMON_NAME = 'fleet-node'
CONTROLLER_COMMON_NAME = 'fleet-controller'

_PEM_BLOCK = re.compile(rb'-----BEGIN ([A-Z ]+)-----.+?-----END \1-----\n?', re.DOTALL)

# Guards creation so one path is generated at most once per process
_create_lock = threading.Lock()


def _openssl(args: list[str], input: Optional[bytes] = None) -> bytes:
    """Run openssl and return stdout.

    Raises:
        FleetError: If openssl is missing or fails
    """
    try:
        result = subprocess.run(['openssl', *args], input=input, capture_output=True, check=True)
    except FileNotFoundError as e:
        raise FleetError("openssl not found in PATH") from e
    except subprocess.CalledProcessError as e:
        stderr = e.stderr.decode('utf-8', errors='replace').strip()
        raise FleetError(f"openssl {args[0]} failed: {stderr}") from e
    return result.stdout


def _openssl_config(common_name: str, ca: bool) -> str:
    """Config for `openssl req` and the extensions of the issued certificate."""
    if ca:
        extensions = (
            "basicConstraints = critical, CA:TRUE\n"
            "keyUsage = critical, keyCertSign, cRLSign\n"
            "subjectKeyIdentifier = hash\n"
        )
    else:
        extensions = (
            "basicConstraints = CA:FALSE\n"
            "keyUsage = digitalSignature, keyEncipherment\n"
            "extendedKeyUsage = serverAuth, clientAuth\n"
            f"subjectAltName = DNS:{common_name}\n"
            "subjectKeyIdentifier = hash\n"
            "authorityKeyIdentifier = keyid, issuer\n"
        )
    return f"""
[req]
prompt = no
default_md = sha256
distinguished_name = dn
x509_extensions = v3_ext

[dn]
CN = {common_name}

[v3_ext]
{extensions}"""


def split_pem(data: bytes) -> tuple[list[bytes], Optional[bytes]]:
    """Split PEM data into (certificates, private key)."""
    certs = []
    key = None
    for match in _PEM_BLOCK.finditer(data):
        block = match.group(0)
        if not block.endswith(b'\n'):
            block += b'\n'
        if match.group(1) == b'CERTIFICATE':
            certs.append(block)
        elif match.group(1).endswith(b'PRIVATE KEY') and key is None:
            key = block
    return certs, key


def get_cert_fingerprint(cert_pem: bytes) -> str:
    """SHA256 fingerprint of a PEM certificate ("AB:CD:EF:...")."""
    output = _openssl(['x509', '-noout', '-fingerprint', '-sha256'], input=cert_pem).decode().strip()
    # Output format: "sha256 Fingerprint=AB:CD:EF:..."
    if '=' in output:
        return output.split('=', 1)[1]
    return output


@dataclass
class Credentials:
    """A leaf certificate and its key on disk."""
    common_name: str
    cert_path: Path
    key_path: Path


class _ContextAdapter(HTTPAdapter):
    """Transport adapter that connects with a fixed SSLContext."""

    def __init__(self, ssl_context: ssl.SSLContext, **kwargs):
        self._ssl_context = ssl_context
        super().__init__(**kwargs)

    def init_poolmanager(self, connections, maxsize, block=False, **pool_kwargs):
        pool_kwargs['ssl_context'] = self._ssl_context
        # Nodes are addressed by IP; trust comes from the CA alone
        pool_kwargs['assert_hostname'] = False
        super().init_poolmanager(connections, maxsize, block, **pool_kwargs)


@dataclass
class Authority:
    """CA material plus the leaves issued from it.

    Attributes:
        path: Combined PEM file this authority was loaded from
        ca_cert: CA certificate (PEM)
        ca_key: CA private key (PEM); None for a node bundle
        leaf: Bundled leaf credentials (node bundle only)
    """
    path: Path
    ca_cert: bytes
    ca_key: Optional[bytes] = None
    leaf: Optional[Credentials] = None
    _issued: dict = field(default_factory=dict, repr=False)
    _client_context: Optional[ssl.SSLContext] = field(default=None, repr=False)
    _context_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    _work_dir: Optional[Path] = field(default=None, repr=False)

    @property
    def work_dir(self) -> Path:
        """Directory holding the CA certificate and issued leaves."""
        if self._work_dir is not None:
            return self._work_dir
        return self.path.parent / f"{self.path.stem}.d"

    @property
    def ca_cert_path(self) -> Path:
        path = self.work_dir / 'ca.crt'
        if not path.exists():
            self.work_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(self.ca_cert)
        return path

    @property
    def fingerprint(self) -> str:
        return get_cert_fingerprint(self.ca_cert)

    @classmethod
    def create(cls, path: Path, days: int = DEFAULT_CA_DAYS, key_size: int = DEFAULT_KEY_SIZE) -> 'Authority':
        """Generate a new CA and write it to path (mode 0600)."""
        path = Path(path)
        logger.info("Generating authority at %s", path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with tempfile.TemporaryDirectory() as tmp:
            config_path = Path(tmp) / 'ca.cnf'
            config_path.write_text(_openssl_config(CA_COMMON_NAME, ca=True))
            key_path = Path(tmp) / 'ca.key'
            cert_path = Path(tmp) / 'ca.crt'
            _openssl([
                'req', '-x509', '-nodes',
                '-newkey', f'rsa:{key_size}',
                '-keyout', str(key_path),
                '-out', str(cert_path),
                '-days', str(days),
                '-config', str(config_path),
            ])
            key = key_path.read_bytes()
            cert = cert_path.read_bytes()

        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'wb') as f:
            f.write(key + cert)
        os.chmod(path, 0o600)

        authority = cls(path=path, ca_cert=cert, ca_key=key)
        logger.info("Authority fingerprint (SHA256): %s", authority.fingerprint)
        return authority

    @classmethod
    def load(cls, path: Path) -> 'Authority':
        """Load an authority PEM or a node bundle.

        Raises:
            ConfigurationError: If the file holds neither
        """
        path = Path(path)
        certs, key = split_pem(path.read_bytes())
        if not certs or key is None:
            raise ConfigurationError(f"{path}: expected a certificate and a private key")
        if len(certs) == 1:
            return cls(path=path, ca_cert=certs[0], ca_key=key)

        # Node bundle: CA certificate, node certificate, node key. The bundle
        # is usually on a read-only mount, so leaves are unpacked elsewhere.
        authority = cls(path=path, ca_cert=certs[0], _work_dir=Path(tempfile.mkdtemp(prefix='fleet-node-')))
        authority.work_dir.mkdir(parents=True, exist_ok=True)
        cert_path = authority.work_dir / f"{NODE_COMMON_NAME}.crt"
        key_path = authority.work_dir / f"{NODE_COMMON_NAME}.key"
        cert_path.write_bytes(certs[1])
        key_path.write_bytes(key)
        os.chmod(key_path, 0o600)
        authority.leaf = Credentials(NODE_COMMON_NAME, cert_path, key_path)
        return authority

    @classmethod
    def load_or_create(cls, path: Path) -> 'Authority':
        """Load the authority at path, generating it first if absent."""
        path = Path(path)
        with _create_lock:
            if path.exists():
                logger.debug("Using existing authority: %s", path)
                return cls.load(path)
            return cls.create(path)

    def issue(self, common_name: str, days: int = DEFAULT_CERT_DAYS, key_size: int = DEFAULT_KEY_SIZE) -> Credentials:
        """Issue a leaf certificate for server and client auth.

        Raises:
            FleetError: If this authority has no CA key (node bundle)
        """
        if self.ca_key is None:
            raise FleetError(f"{self.path}: cannot issue certificates without the CA key")

        self.work_dir.mkdir(parents=True, exist_ok=True)
        cert_path = self.work_dir / f"{common_name}.crt"
        key_path = self.work_dir / f"{common_name}.key"
        logger.info("Issuing certificate for %s", common_name)

        with tempfile.TemporaryDirectory() as tmp:
            config_path = Path(tmp) / 'leaf.cnf'
            config_path.write_text(_openssl_config(common_name, ca=False))
            csr_path = Path(tmp) / 'leaf.csr'
            _openssl([
                'req', '-new', '-nodes',
                '-newkey', f'rsa:{key_size}',
                '-keyout', str(key_path),
                '-out', str(csr_path),
                '-config', str(config_path),
            ])
            os.chmod(key_path, 0o600)
            # The combined PEM serves as both -CA and -CAkey
            _openssl([
                'x509', '-req',
                '-in', str(csr_path),
                '-CA', str(self.path),
                '-CAkey', str(self.path),
                '-set_serial', str(secrets.randbits(63)),
                '-days', str(days),
                '-extfile', str(config_path),
                '-extensions', 'v3_ext',
                '-out', str(cert_path),
            ])

        credentials = Credentials(common_name, cert_path, key_path)
        self._issued[common_name] = credentials
        return credentials

    def credentials(self, common_name: str) -> Credentials:
        """Issued (or bundled) credentials for common_name, issuing once."""
        if self.leaf is not None:
            return self.leaf
        if common_name not in self._issued:
            self.issue(common_name)
        return self._issued[common_name]

    def server_context(self, common_name: str = NODE_COMMON_NAME) -> ssl.SSLContext:
        """Server-side context that requires client certificates from this CA."""
        creds = self.credentials(common_name)
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        context.load_cert_chain(certfile=str(creds.cert_path), keyfile=str(creds.key_path))
        context.load_verify_locations(cadata=self.ca_cert.decode('ascii'))
        context.verify_mode = ssl.CERT_REQUIRED
        return context

    def client_context(self) -> ssl.SSLContext:
        """Client-side context, built once and cached."""
        with self._context_lock:
            if self._client_context is None:
                creds = self.credentials(CONTROLLER_COMMON_NAME)
                context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
                context.check_hostname = False
                context.verify_mode = ssl.CERT_REQUIRED
                context.load_cert_chain(certfile=str(creds.cert_path), keyfile=str(creds.key_path))
                context.load_verify_locations(cadata=self.ca_cert.decode('ascii'))
                self._client_context = context
            return self._client_context

    def http_session(self) -> requests.Session:
        """requests.Session that speaks mutual TLS to nodes."""
        context = self.client_context()
        creds = self.credentials(CONTROLLER_COMMON_NAME)
        session = requests.Session()
        session.mount('https://', _ContextAdapter(context))
        session.verify = str(self.ca_cert_path)
        session.cert = (str(creds.cert_path), str(creds.key_path))
        return session

    def node_bundle(self) -> bytes:
        """CA certificate plus node certificate and key, without the CA key."""
        creds = self.credentials(NODE_COMMON_NAME)
        return self.ca_cert + creds.cert_path.read_bytes() + creds.key_path.read_bytes()
