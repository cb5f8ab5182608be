import copy
import logging
import posixpath

logger = logging.getLogger(__name__)

SIDECAR_CONTAINER_NAME = "daprd"
SIDECAR_COMMAND = "/daprd"

SIDECAR_HTTP_PORT_NAME = "dapr-http"
SIDECAR_GRPC_PORT_NAME = "dapr-grpc"
SIDECAR_INTERNAL_GRPC_PORT_NAME = "dapr-internal"
SIDECAR_METRICS_PORT_NAME = "dapr-metrics"

USER_CONTAINER_DAPR_HTTP_PORT_NAME = "DAPR_HTTP_PORT"
USER_CONTAINER_DAPR_GRPC_PORT_NAME = "DAPR_GRPC_PORT"

HOST_IP_ENV_VAR = "DAPR_HOST_IP"
TRUST_ANCHORS_ENV_VAR = "DAPR_TRUST_ANCHORS"
CERT_CHAIN_ENV_VAR = "DAPR_CERT_CHAIN"
CERT_KEY_ENV_VAR = "DAPR_CERT_KEY"
SENTRY_LOCAL_IDENTITY_ENV_VAR = "SENTRY_LOCAL_IDENTITY"
API_TOKEN_ENV_VAR = "DAPR_API_TOKEN"
APP_API_TOKEN_ENV_VAR = "APP_API_TOKEN"
TOKEN_SECRET_KEY = "token"

KUBERNETES_MOUNT_PATH = "/var/run/secrets/kubernetes.io/serviceaccount"
API_VERSION_V1 = "v1.0"
SIDECAR_HEALTHZ_PATH = "healthz"

PULL_POLICIES = ("Always", "Never", "IfNotPresent")
DEFAULT_PULL_POLICY = "IfNotPresent"


def get_pull_policy(pull_policy):
    if pull_policy in PULL_POLICIES:
        return pull_policy
    return DEFAULT_PULL_POLICY


def get_kubernetes_dns(name, namespace):
    return f"{name}.{namespace}.svc.cluster.local"


def format_probe_path(*elements):
    path = posixpath.join(*elements) if elements else ""
    if path:
        path = posixpath.normpath(path)
    if not path.startswith("/"):
        path = f"/{path}"
    return path


def get_probe_http_handler(port, *path_elements):
    return {
        "httpGet": {
            "path": format_probe_path(*path_elements),
            "port": port
        }
    }


def get_probe(handler, delay, timeout, period, threshold):
    probe = copy.deepcopy(handler)
    probe.update({
        "initialDelaySeconds": delay,
        "timeoutSeconds": timeout,
        "periodSeconds": period,
        "failureThreshold": threshold
    })
    return probe


def get_token_volume_mount(containers):
    """Copy the service account token mount of the first container that has one."""
    for container in containers:
        for volume_mount in container.get("volumeMounts") or []:
            if volume_mount.get("mountPath") == KUBERNETES_MOUNT_PATH:
                return dict(volume_mount)
    return None


def get_port_env(config):
    """Environment variables telling the other containers where the sidecar listens."""
    return [
        {"name": USER_CONTAINER_DAPR_HTTP_PORT_NAME, "value": str(config.http_port)},
        {"name": USER_CONTAINER_DAPR_GRPC_PORT_NAME, "value": str(config.grpc_port)},
    ]


def get_secret_env(name, secret_name):
    return {
        "name": name,
        "valueFrom": {
            "secretKeyRef": {
                "name": secret_name,
                "key": TOKEN_SECRET_KEY
            }
        }
    }


def get_sidecar_container(config, app_id, image, image_pull_policy, namespace, control_plane_address,
                          placement_address, sentry_address, trust, token_volume_mount=None):
    """Build the sidecar container from the resolved config and trust material."""
    logger.debug("Entering get_sidecar_container()")

    app_port = str(config.app_port) if config.app_port > 0 else ""
    http_handler = get_probe_http_handler(config.http_port, API_VERSION_V1, SIDECAR_HEALTHZ_PATH)

    args = [
        "--mode", "kubernetes",
        "--dapr-http-port", str(config.http_port),
        "--dapr-grpc-port", str(config.grpc_port),
        "--dapr-internal-grpc-port", str(config.internal_grpc_port),
        "--app-port", app_port,
        "--app-id", app_id,
        "--control-plane-address", control_plane_address,
        "--app-protocol", config.app_protocol,
        "--placement-host-address", placement_address,
        "--config", config.config,
        "--log-level", config.log_level,
        "--app-max-concurrency", str(config.app_max_concurrency),
        "--sentry-address", sentry_address,
        "--metrics-port", str(config.metrics_port),
        "--dapr-http-max-request-size", str(config.max_request_body_size),
    ]

    env = [
        {
            "name": HOST_IP_ENV_VAR,
            "valueFrom": {
                "fieldRef": {
                    "fieldPath": "status.podIP"
                }
            }
        },
        {"name": "NAMESPACE", "value": namespace},
    ]

    if config.log_as_json:
        args.append("--log-as-json")

    if config.enable_profiling:
        args.append("--enable-profiling")

    if trust.available:
        args.append("--enable-mtls")
        env.extend([
            {"name": TRUST_ANCHORS_ENV_VAR, "value": trust.root_cert},
            {"name": CERT_CHAIN_ENV_VAR, "value": trust.cert_chain},
            {"name": CERT_KEY_ENV_VAR, "value": trust.cert_key},
            {"name": SENTRY_LOCAL_IDENTITY_ENV_VAR, "value": trust.identity},
        ])

    if config.app_ssl:
        args.append("--app-ssl")

    if config.api_token_secret:
        env.append(get_secret_env(API_TOKEN_ENV_VAR, config.api_token_secret))

    if config.app_token_secret:
        env.append(get_secret_env(APP_API_TOKEN_ENV_VAR, config.app_token_secret))

    sidecar = {
        "name": SIDECAR_CONTAINER_NAME,
        "image": image,
        "imagePullPolicy": get_pull_policy(image_pull_policy),
        "securityContext": {
            "allowPrivilegeEscalation": False
        },
        "ports": [
            {"name": SIDECAR_HTTP_PORT_NAME, "containerPort": config.http_port},
            {"name": SIDECAR_GRPC_PORT_NAME, "containerPort": config.grpc_port},
            {"name": SIDECAR_INTERNAL_GRPC_PORT_NAME, "containerPort": config.internal_grpc_port},
            {"name": SIDECAR_METRICS_PORT_NAME, "containerPort": config.metrics_port},
        ],
        "command": [SIDECAR_COMMAND],
        "env": env,
        "args": args,
        "readinessProbe": get_probe(
            http_handler,
            config.readiness_probe_delay,
            config.readiness_probe_timeout,
            config.readiness_probe_period,
            config.readiness_probe_threshold,
        ),
        "livenessProbe": get_probe(
            http_handler,
            config.liveness_probe_delay,
            config.liveness_probe_timeout,
            config.liveness_probe_period,
            config.liveness_probe_threshold,
        ),
    }

    if token_volume_mount is not None:
        sidecar["volumeMounts"] = [token_volume_mount]

    if config.resources is not None:
        sidecar["resources"] = config.resources

    logger.debug("Exiting get_sidecar_container()")
    return sidecar
