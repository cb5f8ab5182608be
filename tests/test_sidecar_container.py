import pytest

import sidecar_container
from sidecar_annotations import SidecarConfig
from trust_material import TrustMaterial

CONTROL_PLANE_ADDRESS = "dapr-api.dapr-system.svc.cluster.local:80"
PLACEMENT_ADDRESS = "dapr-placement-server.dapr-system.svc.cluster.local:50005"
SENTRY_ADDRESS = "dapr-sentry.dapr-system.svc.cluster.local:80"

NO_MTLS = TrustMaterial(mtls_enabled=False)
MTLS = TrustMaterial(
    mtls_enabled=True,
    root_cert="root",
    cert_chain="chain",
    cert_key="key",
    identity="shop:orders",
)


def _build(annotations=None, trust=NO_MTLS, token_volume_mount=None, pull_policy="IfNotPresent"):
    return sidecar_container.get_sidecar_container(
        SidecarConfig.from_annotations(annotations or {}),
        "orders-api",
        "docker.io/daprio/daprd:1.0.0",
        pull_policy,
        "shop",
        CONTROL_PLANE_ADDRESS,
        PLACEMENT_ADDRESS,
        SENTRY_ADDRESS,
        trust,
        token_volume_mount=token_volume_mount,
    )


def test_default_sidecar() -> None:
    sidecar = _build()

    assert sidecar["name"] == "daprd"
    assert sidecar["image"] == "docker.io/daprio/daprd:1.0.0"
    assert sidecar["imagePullPolicy"] == "IfNotPresent"
    assert sidecar["securityContext"] == {"allowPrivilegeEscalation": False}
    assert sidecar["command"] == ["/daprd"]
    assert sidecar["ports"] == [
        {"name": "dapr-http", "containerPort": 3500},
        {"name": "dapr-grpc", "containerPort": 50001},
        {"name": "dapr-internal", "containerPort": 50002},
        {"name": "dapr-metrics", "containerPort": 9090},
    ]
    assert sidecar["env"] == [
        {"name": "DAPR_HOST_IP", "valueFrom": {"fieldRef": {"fieldPath": "status.podIP"}}},
        {"name": "NAMESPACE", "value": "shop"},
    ]
    assert sidecar["args"] == [
        "--mode", "kubernetes",
        "--dapr-http-port", "3500",
        "--dapr-grpc-port", "50001",
        "--dapr-internal-grpc-port", "50002",
        "--app-port", "",
        "--app-id", "orders-api",
        "--control-plane-address", CONTROL_PLANE_ADDRESS,
        "--app-protocol", "http",
        "--placement-host-address", PLACEMENT_ADDRESS,
        "--config", "",
        "--log-level", "info",
        "--app-max-concurrency", "-1",
        "--sentry-address", SENTRY_ADDRESS,
        "--metrics-port", "9090",
        "--dapr-http-max-request-size", "-1",
    ]
    assert "resources" not in sidecar
    assert "volumeMounts" not in sidecar


def test_probes() -> None:
    sidecar = _build({"dapr.io/sidecar-readiness-probe-period-seconds": "20"})

    assert sidecar["livenessProbe"] == {
        "httpGet": {"path": "/v1.0/healthz", "port": 3500},
        "initialDelaySeconds": 3,
        "timeoutSeconds": 3,
        "periodSeconds": 6,
        "failureThreshold": 3,
    }
    assert sidecar["readinessProbe"]["periodSeconds"] == 20
    assert sidecar["readinessProbe"]["httpGet"] == sidecar["livenessProbe"]["httpGet"]
    assert sidecar["readinessProbe"]["httpGet"] is not sidecar["livenessProbe"]["httpGet"]


def test_probe_follows_http_port() -> None:
    sidecar = _build({"com.infoblox.dapr.sidecar-http-port": "3600"})

    assert sidecar["livenessProbe"]["httpGet"]["port"] == 3600
    assert sidecar["args"][3] == "3600"


def test_configured_args() -> None:
    sidecar = _build(
        {
            "dapr.io/app-port": "8080",
            "dapr.io/config": "tracing",
            "dapr.io/app-protocol": "grpc",
            "dapr.io/log-level": "debug",
            "dapr.io/app-max-concurrency": "5",
            "dapr.io/http-max-request-size": "16",
        }
    )
    args = sidecar["args"]

    def flag(name):
        return args[args.index(name) + 1]

    assert flag("--app-port") == "8080"
    assert flag("--config") == "tracing"
    assert flag("--app-protocol") == "grpc"
    assert flag("--log-level") == "debug"
    assert flag("--app-max-concurrency") == "5"
    assert flag("--dapr-http-max-request-size") == "16"


def test_conditional_flags_keep_order() -> None:
    sidecar = _build(
        {
            "dapr.io/log-as-json": "true",
            "dapr.io/enable-profiling": "yes",
            "dapr.io/app-ssl": "on",
        },
        trust=MTLS,
    )

    assert sidecar["args"][-4:] == ["--log-as-json", "--enable-profiling", "--enable-mtls", "--app-ssl"]


def test_mtls_env() -> None:
    sidecar = _build(trust=MTLS)

    assert sidecar["env"][2:] == [
        {"name": "DAPR_TRUST_ANCHORS", "value": "root"},
        {"name": "DAPR_CERT_CHAIN", "value": "chain"},
        {"name": "DAPR_CERT_KEY", "value": "key"},
        {"name": "SENTRY_LOCAL_IDENTITY", "value": "shop:orders"},
    ]


@pytest.mark.parametrize(
    "trust",
    [
        pytest.param(NO_MTLS, id="disabled"),
        pytest.param(TrustMaterial(mtls_enabled=True), id="enabled-without-root-cert"),
        pytest.param(TrustMaterial(mtls_enabled=False, root_cert="root"), id="disabled-with-root-cert"),
    ],
)
def test_mtls_requires_policy_and_root_cert(trust: TrustMaterial) -> None:
    sidecar = _build(trust=trust)

    assert "--enable-mtls" not in sidecar["args"]
    assert [env["name"] for env in sidecar["env"]] == ["DAPR_HOST_IP", "NAMESPACE"]


def test_token_secrets() -> None:
    sidecar = _build({"dapr.io/api-token-secret": "dapr-api-token", "dapr.io/app-token-secret": "app-token"})

    assert sidecar["env"][2:] == [
        {"name": "DAPR_API_TOKEN", "valueFrom": {"secretKeyRef": {"name": "dapr-api-token", "key": "token"}}},
        {"name": "APP_API_TOKEN", "valueFrom": {"secretKeyRef": {"name": "app-token", "key": "token"}}},
    ]


def test_resources_attached() -> None:
    sidecar = _build({"dapr.io/sidecar-memory-request": "64Mi"})

    assert sidecar["resources"] == {"requests": {"memory": "64Mi"}}


def test_token_volume_mount() -> None:
    mount = {"name": "default-token-x2x9k", "mountPath": sidecar_container.KUBERNETES_MOUNT_PATH, "readOnly": True}

    sidecar = _build(token_volume_mount=mount)

    assert sidecar["volumeMounts"] == [mount]


def test_get_token_volume_mount() -> None:
    mount = {"name": "default-token-x2x9k", "mountPath": "/var/run/secrets/kubernetes.io/serviceaccount"}
    containers = [
        {"name": "init", "volumeMounts": [{"name": "data", "mountPath": "/data"}]},
        {"name": "app", "volumeMounts": [mount]},
        {"name": "other", "volumeMounts": [dict(mount, name="other-token")]},
    ]

    found = sidecar_container.get_token_volume_mount(containers)

    assert found == mount
    assert found is not mount
    assert sidecar_container.get_token_volume_mount([{"name": "app"}]) is None


@pytest.mark.parametrize(
    ("elements", "expected"),
    [
        pytest.param(("v1.0", "healthz"), "/v1.0/healthz", id="relative"),
        pytest.param(("/v1.0/", "healthz"), "/v1.0/healthz", id="absolute"),
        pytest.param(("v1.0", "", "healthz/"), "/v1.0/healthz", id="empty-element"),
        pytest.param((), "/", id="nothing"),
    ],
)
def test_format_probe_path(elements: tuple, expected: str) -> None:
    assert sidecar_container.format_probe_path(*elements) == expected


@pytest.mark.parametrize(
    ("policy", "expected"),
    [
        pytest.param("Always", "Always", id="always"),
        pytest.param("Never", "Never", id="never"),
        pytest.param("IfNotPresent", "IfNotPresent", id="if-not-present"),
        pytest.param("sometimes", "IfNotPresent", id="unknown"),
        pytest.param("", "IfNotPresent", id="empty"),
    ],
)
def test_pull_policy(policy: str, expected: str) -> None:
    assert _build(pull_policy=policy)["imagePullPolicy"] == expected


def test_port_env() -> None:
    config = SidecarConfig.from_annotations({"com.infoblox.dapr.sidecar-grpc-port": "51001"})

    assert sidecar_container.get_port_env(config) == [
        {"name": "DAPR_HTTP_PORT", "value": "3500"},
        {"name": "DAPR_GRPC_PORT", "value": "51001"},
    ]
