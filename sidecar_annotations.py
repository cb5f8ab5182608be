import re
import logging
import dataclasses
from typing import Optional

from kubernetes.utils import parse_quantity

logger = logging.getLogger(__name__)

# Annotation keys read from the workload
ENABLED_KEY = "dapr.io/enabled"
APP_PORT_KEY = "dapr.io/app-port"
CONFIG_KEY = "dapr.io/config"
APP_PROTOCOL_KEY = "dapr.io/app-protocol"
APP_ID_KEY = "dapr.io/app-id"
ENABLE_PROFILING_KEY = "dapr.io/enable-profiling"
LOG_LEVEL_KEY = "dapr.io/log-level"
API_TOKEN_SECRET_KEY = "dapr.io/api-token-secret"
APP_TOKEN_SECRET_KEY = "dapr.io/app-token-secret"
LOG_AS_JSON_KEY = "dapr.io/log-as-json"
APP_MAX_CONCURRENCY_KEY = "dapr.io/app-max-concurrency"
METRICS_PORT_KEY = "dapr.io/metrics-port"
CPU_LIMIT_KEY = "dapr.io/sidecar-cpu-limit"
MEMORY_LIMIT_KEY = "dapr.io/sidecar-memory-limit"
CPU_REQUEST_KEY = "dapr.io/sidecar-cpu-request"
MEMORY_REQUEST_KEY = "dapr.io/sidecar-memory-request"
LIVENESS_PROBE_DELAY_KEY = "dapr.io/sidecar-liveness-probe-delay-seconds"
LIVENESS_PROBE_TIMEOUT_KEY = "dapr.io/sidecar-liveness-probe-timeout-seconds"
LIVENESS_PROBE_PERIOD_KEY = "dapr.io/sidecar-liveness-probe-period-seconds"
LIVENESS_PROBE_THRESHOLD_KEY = "dapr.io/sidecar-liveness-probe-threshold"
READINESS_PROBE_DELAY_KEY = "dapr.io/sidecar-readiness-probe-delay-seconds"
READINESS_PROBE_TIMEOUT_KEY = "dapr.io/sidecar-readiness-probe-timeout-seconds"
READINESS_PROBE_PERIOD_KEY = "dapr.io/sidecar-readiness-probe-period-seconds"
READINESS_PROBE_THRESHOLD_KEY = "dapr.io/sidecar-readiness-probe-threshold"
MAX_REQUEST_BODY_SIZE_KEY = "dapr.io/http-max-request-size"
APP_SSL_KEY = "dapr.io/app-ssl"
SIDECAR_GRPC_PORT_KEY = "com.infoblox.dapr.sidecar-grpc-port"
SIDECAR_HTTP_PORT_KEY = "com.infoblox.dapr.sidecar-http-port"
SIDECAR_INTERNAL_GRPC_PORT_KEY = "com.infoblox.dapr.sidecar-internal-grpc-port"

DEFAULT_LOG_LEVEL = "info"
DEFAULT_APP_PROTOCOL = "http"
DEFAULT_METRICS_PORT = 9090
DEFAULT_SIDECAR_HTTP_PORT = 3500
DEFAULT_SIDECAR_GRPC_PORT = 50001
DEFAULT_SIDECAR_INTERNAL_GRPC_PORT = 50002
DEFAULT_PROBE_DELAY_SECONDS = 3
DEFAULT_PROBE_TIMEOUT_SECONDS = 3
DEFAULT_PROBE_PERIOD_SECONDS = 6
DEFAULT_PROBE_THRESHOLD = 3

TRUE_VALUES = {"y", "yes", "true", "on", "1"}

INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1

_INTEGER = re.compile(r"[+-]?[0-9]+")

# <signed number><binary SI | decimal SI | decimal exponent>
_QUANTITY = re.compile(r"[+-]?(?:[0-9]+(?:\.[0-9]*)?|\.[0-9]+)(?:[KMGTPE]i|[numkMGTPE]|[eE][+-]?[0-9]+)?")

# Parse strategies
STRING = "string"
BOOL = "bool"
INT = "int"
STRICT_INT = "strict-int"


class ResourceRequirementsError(Exception):
    """An annotated sidecar resource quantity could not be parsed."""


def get_bool_annotation_or_default(annotations, key, default=False):
    if key not in annotations:
        return default
    return annotations[key].lower() in TRUE_VALUES


def get_string_annotation_or_default(annotations, key, default=""):
    value = annotations.get(key)
    if value:
        return value
    return default


def parse_int32(value):
    """Parse a signed decimal string that must fit in 32 bits."""
    if not _INTEGER.fullmatch(value):
        raise ValueError(f"invalid syntax: {value!r}")
    number = int(value)
    if number < INT32_MIN or number > INT32_MAX:
        raise ValueError(f"value out of range: {value!r}")
    return number


def get_int32_annotation_or_default(annotations, key, default):
    if key not in annotations:
        return default
    try:
        return parse_int32(annotations[key])
    except ValueError:
        return default


def get_int32_annotation(annotations, key):
    """Return the annotated integer, or -1 when absent.

    A value that does not parse is also reported as -1; the ValueError is
    returned alongside so the caller can decide how loud to be about it.
    """
    if key not in annotations:
        return -1, None
    value = annotations[key]
    try:
        return parse_int32(value), None
    except ValueError as e:
        return -1, ValueError(f"error parsing {key} int value {value}: {e}")


def annotation(key, default, strategy):
    """Declare a SidecarConfig field resolved from a workload annotation."""
    return dataclasses.field(default=default, metadata={"annotation": key, "strategy": strategy})


@dataclasses.dataclass(frozen=True)
class SidecarConfig:
    app_port: int = annotation(APP_PORT_KEY, -1, STRICT_INT)
    config: str = annotation(CONFIG_KEY, "", STRING)
    app_protocol: str = annotation(APP_PROTOCOL_KEY, DEFAULT_APP_PROTOCOL, STRING)
    log_level: str = annotation(LOG_LEVEL_KEY, DEFAULT_LOG_LEVEL, STRING)
    log_as_json: bool = annotation(LOG_AS_JSON_KEY, False, BOOL)
    enable_profiling: bool = annotation(ENABLE_PROFILING_KEY, False, BOOL)
    app_ssl: bool = annotation(APP_SSL_KEY, False, BOOL)
    app_max_concurrency: int = annotation(APP_MAX_CONCURRENCY_KEY, -1, STRICT_INT)
    max_request_body_size: int = annotation(MAX_REQUEST_BODY_SIZE_KEY, -1, STRICT_INT)
    metrics_port: int = annotation(METRICS_PORT_KEY, DEFAULT_METRICS_PORT, INT)
    http_port: int = annotation(SIDECAR_HTTP_PORT_KEY, DEFAULT_SIDECAR_HTTP_PORT, INT)
    grpc_port: int = annotation(SIDECAR_GRPC_PORT_KEY, DEFAULT_SIDECAR_GRPC_PORT, INT)
    internal_grpc_port: int = annotation(SIDECAR_INTERNAL_GRPC_PORT_KEY, DEFAULT_SIDECAR_INTERNAL_GRPC_PORT, INT)
    liveness_probe_delay: int = annotation(LIVENESS_PROBE_DELAY_KEY, DEFAULT_PROBE_DELAY_SECONDS, INT)
    liveness_probe_timeout: int = annotation(LIVENESS_PROBE_TIMEOUT_KEY, DEFAULT_PROBE_TIMEOUT_SECONDS, INT)
    liveness_probe_period: int = annotation(LIVENESS_PROBE_PERIOD_KEY, DEFAULT_PROBE_PERIOD_SECONDS, INT)
    liveness_probe_threshold: int = annotation(LIVENESS_PROBE_THRESHOLD_KEY, DEFAULT_PROBE_THRESHOLD, INT)
    readiness_probe_delay: int = annotation(READINESS_PROBE_DELAY_KEY, DEFAULT_PROBE_DELAY_SECONDS, INT)
    readiness_probe_timeout: int = annotation(READINESS_PROBE_TIMEOUT_KEY, DEFAULT_PROBE_TIMEOUT_SECONDS, INT)
    readiness_probe_period: int = annotation(READINESS_PROBE_PERIOD_KEY, DEFAULT_PROBE_PERIOD_SECONDS, INT)
    readiness_probe_threshold: int = annotation(READINESS_PROBE_THRESHOLD_KEY, DEFAULT_PROBE_THRESHOLD, INT)
    api_token_secret: str = annotation(API_TOKEN_SECRET_KEY, "", STRING)
    app_token_secret: str = annotation(APP_TOKEN_SECRET_KEY, "", STRING)
    resources: Optional[dict] = None

    @classmethod
    def from_annotations(cls, annotations):
        """Resolve every declared field from the annotation set in one pass.

        Raises ResourceRequirementsError when a resource quantity is malformed;
        every other malformed value falls back to its default.
        """
        annotations = annotations or {}
        values = {}
        for field in dataclasses.fields(cls):
            key = field.metadata.get("annotation")
            if key is None:
                continue
            values[field.name] = resolve_annotation(annotations, key, field.default, field.metadata["strategy"])
        values["resources"] = get_resource_requirements(annotations)
        return cls(**values)


def resolve_annotation(annotations, key, default, strategy):
    if strategy == STRING:
        return get_string_annotation_or_default(annotations, key, default)
    if strategy == BOOL:
        return get_bool_annotation_or_default(annotations, key, default)
    if strategy == INT:
        return get_int32_annotation_or_default(annotations, key, default)
    if strategy == STRICT_INT:
        value, err = get_int32_annotation(annotations, key)
        if err is not None:
            logger.warning(str(err))
        return value
    raise ValueError(f"unknown annotation parse strategy {strategy!r}")


def is_injection_enabled(annotations):
    return get_bool_annotation_or_default(annotations or {}, ENABLED_KEY, False)


# (annotation key, requirements section, resource name, label used in errors)
RESOURCE_ANNOTATIONS = [
    (CPU_LIMIT_KEY, "limits", "cpu", "cpu limit"),
    (MEMORY_LIMIT_KEY, "limits", "memory", "memory limit"),
    (CPU_REQUEST_KEY, "requests", "cpu", "cpu request"),
    (MEMORY_REQUEST_KEY, "requests", "memory", "memory request"),
]


def validate_quantity(quantity):
    """Raise ValueError unless quantity is a Kubernetes resource quantity."""
    if not isinstance(quantity, str) or not _QUANTITY.fullmatch(quantity):
        raise ValueError(f"quantities must match the regular expression '{_QUANTITY.pattern}': {quantity!r}")
    parse_quantity(quantity)


def get_resource_requirements(annotations):
    """Build the sidecar resource requirements, or None when none are annotated.

    Quantities are checked against the Kubernetes quantity syntax and kept
    verbatim. Empty sections are left out.
    """
    requirements = {"limits": {}, "requests": {}}
    for key, section, resource_name, label in RESOURCE_ANNOTATIONS:
        if key not in annotations:
            continue
        quantity = annotations[key]
        try:
            validate_quantity(quantity)
        except ValueError as e:
            raise ResourceRequirementsError(f"error parsing sidecar {label}: {e}") from e
        requirements[section][resource_name] = quantity

    requirements = {section: values for section, values in requirements.items() if values}
    if not requirements:
        return None
    return requirements
