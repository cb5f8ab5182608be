import json
import logging

import patch_ops
import sidecar_container
from sidecar_annotations import (
    APP_ID_KEY,
    ResourceRequirementsError,
    SidecarConfig,
    get_string_annotation_or_default,
    is_injection_enabled,
)
from trust_material import resolve_trust_material
from validation import AppIDValidationError, validate_kubernetes_app_id

logger = logging.getLogger(__name__)

API_ADDRESS = "dapr-api"
PLACEMENT_SERVICE = "dapr-placement-server"
SENTRY_SERVICE = "dapr-sentry"
PLACEMENT_PORT = 50005
SENTRY_PORT = 80
API_PORT = 80


class InjectionError(Exception):
    """The sidecar cannot be injected and the admission must be rejected."""


class PodDecodeError(InjectionError):
    pass


def decode_pod(raw):
    """Return the workload descriptor carried by an admission request."""
    if isinstance(raw, (bytes, str)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            raise PodDecodeError(f"could not unmarshal raw object: {e}") from e
    if not isinstance(raw, dict):
        raise PodDecodeError(f"could not unmarshal raw object: expected an object, got {type(raw).__name__}")

    for field, expected in (("metadata", dict), ("spec", dict)):
        if raw.get(field) is not None and not isinstance(raw[field], expected):
            raise PodDecodeError(f"could not unmarshal raw object: {field} must be an object")

    metadata = raw.get("metadata") or {}
    spec = raw.get("spec") or {}
    for path, value in (("metadata.name", metadata.get("name")),
                        ("metadata.namespace", metadata.get("namespace")),
                        ("spec.serviceAccountName", spec.get("serviceAccountName"))):
        if value is not None and not isinstance(value, str):
            raise PodDecodeError(f"could not unmarshal raw object: {path} must be a string")

    annotations = metadata.get("annotations")
    if annotations is not None and not (
        isinstance(annotations, dict)
        and all(isinstance(k, str) and isinstance(v, str) for k, v in annotations.items())
    ):
        raise PodDecodeError("could not unmarshal raw object: metadata.annotations must map strings to strings")

    containers = spec.get("containers")
    if containers is not None and not _is_list_of_objects(containers):
        raise PodDecodeError("could not unmarshal raw object: spec.containers must be a list of objects")
    for i, container in enumerate(containers or []):
        for field in ("env", "volumeMounts"):
            if container.get(field) is not None and not _is_list_of_objects(container[field]):
                raise PodDecodeError(f"could not unmarshal raw object: spec.containers[{i}].{field} must be a list of objects")
    return raw


def _is_list_of_objects(value):
    return isinstance(value, list) and all(isinstance(item, dict) for item in value)


def pod_annotations(pod):
    return (pod.get("metadata") or {}).get("annotations") or {}


def pod_containers(pod):
    return (pod.get("spec") or {}).get("containers") or []


def pod_contains_sidecar_container(pod):
    return any(c.get("name") == sidecar_container.SIDECAR_CONTAINER_NAME for c in pod_containers(pod))


def get_app_id(pod):
    name = (pod.get("metadata") or {}).get("name", "")
    return get_string_annotation_or_default(pod_annotations(pod), APP_ID_KEY, name)


def get_pod_patch_operations(admission_request, namespace, image, image_pull_policy,
                             policy_reader, secret_reader, trust_bundle_namespace=None):
    """Compute the JSON patch that injects the sidecar into the admitted pod.

    Returns None when the pod is not opted in or already carries the sidecar.
    Raises InjectionError when the pod cannot be decoded, its app id is
    invalid or a sidecar resource quantity is malformed.

    namespace is the control plane namespace the sidecar talks to; the
    request namespace is the workload's.
    """
    pod = decode_pod(admission_request.get("object"))
    metadata = pod.get("metadata") or {}

    logger.info(
        f"AdmissionReview for Kind={admission_request.get('kind')}, Namespace={admission_request.get('namespace')} "
        f"Name={admission_request.get('name')} ({metadata.get('name')}) UID={admission_request.get('uid')} "
        f"patchOperation={admission_request.get('operation')} UserInfo={admission_request.get('userInfo')}"
    )

    annotations = pod_annotations(pod)
    if not is_injection_enabled(annotations) or pod_contains_sidecar_container(pod):
        return None

    app_id = get_app_id(pod)
    try:
        validate_kubernetes_app_id(app_id)
        config = SidecarConfig.from_annotations(annotations)
    except (AppIDValidationError, ResourceRequirementsError) as e:
        raise InjectionError(str(e)) from e

    request_namespace = admission_request.get("namespace") or metadata.get("namespace", "")
    trust = resolve_trust_material(
        policy_reader,
        secret_reader,
        request_namespace,
        (pod.get("spec") or {}).get("serviceAccountName", ""),
        secret_namespace=trust_bundle_namespace,
    )
    logger.debug(f"mTLS enabled={trust.mtls_enabled} policy={trust.policy_status} trust bundle={trust.secret_status}")

    containers = pod_containers(pod)
    sidecar = sidecar_container.get_sidecar_container(
        config,
        app_id,
        image,
        image_pull_policy,
        request_namespace,
        f"{sidecar_container.get_kubernetes_dns(API_ADDRESS, namespace)}:{API_PORT}",
        f"{sidecar_container.get_kubernetes_dns(PLACEMENT_SERVICE, namespace)}:{PLACEMENT_PORT}",
        f"{sidecar_container.get_kubernetes_dns(SENTRY_SERVICE, namespace)}:{SENTRY_PORT}",
        trust,
        token_volume_mount=sidecar_container.get_token_volume_mount(containers),
    )

    patches = [patch_ops.get_container_patch_operation(containers, sidecar)]
    if containers:
        patches.extend(patch_ops.add_env_vars_to_containers(containers, sidecar_container.get_port_env(config)))

    logger.debug(f"Total patches: {len(patches)}")
    return patches
