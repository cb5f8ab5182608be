import base64
import binascii
import logging
import dataclasses

import urllib3
from kubernetes.client.rest import ApiException

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = "daprsystem"
DEFAULT_MTLS_ENABLED = True

CONFIGURATION_GROUP = "dapr.io"
CONFIGURATION_VERSION = "v1alpha1"
CONFIGURATION_PLURAL = "configurations"

TRUST_BUNDLE_SECRET_NAME = "dapr-trust-bundle"
ROOT_CERT_FILENAME = "ca.crt"
ISSUER_CERT_FILENAME = "issuer.crt"
ISSUER_KEY_FILENAME = "issuer.key"

# Lookup outcomes
FOUND = "found"
NOT_CONFIGURED = "not-configured"
UNAVAILABLE = "unavailable"

LOOKUP_ERRORS = (ApiException, urllib3.exceptions.HTTPError)


@dataclasses.dataclass(frozen=True)
class PolicyLookup:
    status: str
    mtls_enabled: bool = DEFAULT_MTLS_ENABLED


@dataclasses.dataclass(frozen=True)
class SecretLookup:
    status: str
    root_cert: str = ""
    cert_chain: str = ""
    cert_key: str = ""


@dataclasses.dataclass(frozen=True)
class TrustMaterial:
    """Certificates handed to the sidecar for mutual TLS.

    Blank certificates mean mutual TLS cannot be set up for this request,
    whether because it is disabled, not configured, or the lookup failed;
    secret_status tells those apart for diagnostics.
    """

    mtls_enabled: bool = DEFAULT_MTLS_ENABLED
    root_cert: str = ""
    cert_chain: str = ""
    cert_key: str = ""
    identity: str = ""
    policy_status: str = NOT_CONFIGURED
    secret_status: str = NOT_CONFIGURED

    @property
    def available(self):
        return self.mtls_enabled and self.root_cert != ""


class KubernetesPolicyReader:
    """Reads the cluster mTLS policy from the system Configuration resource."""

    def __init__(self, custom_objects_api, config_name=DEFAULT_CONFIG):
        self.api = custom_objects_api
        self.config_name = config_name

    def read(self):
        try:
            resp = self.api.list_cluster_custom_object(
                group=CONFIGURATION_GROUP,
                version=CONFIGURATION_VERSION,
                plural=CONFIGURATION_PLURAL,
            )
        except LOOKUP_ERRORS as e:
            logger.error(f"Failed to load dapr configuration from k8s, use default value {DEFAULT_MTLS_ENABLED} for mTLSEnabled: {e}")
            return PolicyLookup(UNAVAILABLE)

        for item in resp.get("items", []):
            if item.get("metadata", {}).get("name") == self.config_name:
                mtls = (item.get("spec") or {}).get("mtls") or {}
                return PolicyLookup(FOUND, bool(mtls.get("enabled", False)))

        logger.info(f"Dapr system configuration ({self.config_name}) is not found, use default value {DEFAULT_MTLS_ENABLED} for mTLSEnabled")
        return PolicyLookup(NOT_CONFIGURED)


class KubernetesSecretReader:
    """Reads the trust bundle secret holding the root and issuer certificates."""

    def __init__(self, core_v1_api, secret_name=TRUST_BUNDLE_SECRET_NAME):
        self.api = core_v1_api
        self.secret_name = secret_name

    def read(self, namespace):
        try:
            secret = self.api.read_namespaced_secret(self.secret_name, namespace)
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"Secret {namespace}/{self.secret_name} not found")
                return SecretLookup(NOT_CONFIGURED)
            logger.debug(f"Failed to read secret {namespace}/{self.secret_name}: {e.reason} (status: {e.status})")
            return SecretLookup(UNAVAILABLE)
        except urllib3.exceptions.HTTPError as e:
            logger.debug(f"Failed to read secret {namespace}/{self.secret_name}: {e}")
            return SecretLookup(UNAVAILABLE)

        data = secret.data or {}
        try:
            return SecretLookup(
                FOUND,
                root_cert=decode_secret_value(data.get(ROOT_CERT_FILENAME)),
                cert_chain=decode_secret_value(data.get(ISSUER_CERT_FILENAME)),
                cert_key=decode_secret_value(data.get(ISSUER_KEY_FILENAME)),
            )
        except (binascii.Error, UnicodeDecodeError) as e:
            logger.debug(f"Secret {namespace}/{self.secret_name} holds undecodable data: {e}")
            return SecretLookup(UNAVAILABLE)


def decode_secret_value(value):
    # Secret data comes back from the API base64 encoded
    if not value:
        return ""
    return base64.b64decode(value).decode("utf-8")


def resolve_trust_material(policy_reader, secret_reader, namespace, service_account_name, secret_namespace=None):
    """Look up the mTLS policy and, when enabled, the trust bundle.

    The bundle is read from secret_namespace, or from the workload namespace
    when that is not set. The identity is "<namespace>:<service account>" and
    stays blank for workloads without a service account.

    Both lookups are best effort: a failed or missing policy falls back to
    DEFAULT_MTLS_ENABLED and a failed or missing secret yields blank
    certificates. Nothing here raises.
    """
    policy = policy_reader.read()
    mtls_enabled = policy.mtls_enabled if policy.status == FOUND else DEFAULT_MTLS_ENABLED
    if not mtls_enabled:
        return TrustMaterial(mtls_enabled=False, policy_status=policy.status)

    secret = secret_reader.read(secret_namespace or namespace)
    identity = ""
    if service_account_name:
        identity = f"{namespace}:{service_account_name}"

    return TrustMaterial(
        mtls_enabled=True,
        root_cert=secret.root_cert,
        cert_chain=secret.cert_chain,
        cert_key=secret.cert_key,
        identity=identity,
        policy_status=policy.status,
        secret_status=secret.status,
    )
