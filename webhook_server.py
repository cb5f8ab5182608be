import os
import json
import base64
import logging
from functools import lru_cache

from kubernetes import client, config
from flask import Flask, request, jsonify, Response

from pod_patch import InjectionError, get_pod_patch_operations
from trust_material import KubernetesPolicyReader, KubernetesSecretReader

app = Flask(__name__)

# Read sidecar image and control plane settings from environment variables
SIDECAR_IMAGE = os.getenv('SIDECAR_IMAGE', 'docker.io/daprio/daprd:latest')
SIDECAR_IMAGE_PULL_POLICY = os.getenv('SIDECAR_IMAGE_PULL_POLICY', 'IfNotPresent')
NAMESPACE = os.getenv('NAMESPACE', 'default')
TRUST_BUNDLE_NAMESPACE = os.getenv('TRUST_BUNDLE_NAMESPACE', '')
TLS_CERT_FILE = os.getenv('TLS_CERT_FILE', '/dapr/cert/tls.crt')
TLS_KEY_FILE = os.getenv('TLS_KEY_FILE', '/dapr/cert/tls.key')
PORT = int(os.getenv('PORT', '4000'))

# Loggers of the modules doing the actual injection work
CORE_LOGGERS = ('pod_patch', 'sidecar_annotations', 'sidecar_container', 'trust_material')


def configure_logging():
    # Read the DEBUG_LEVEL from environment variables, defaulting to INFO
    DEBUG_LEVEL = os.getenv('DEBUG_LEVEL', 'INFO').upper()

    logging_levels = {
        'DEBUG': logging.DEBUG,
        'INFO': logging.INFO,
        'WARNING': logging.WARNING,
        'ERROR': logging.ERROR,
        'CRITICAL': logging.CRITICAL
    }
    log_level = logging_levels.get(DEBUG_LEVEL, logging.INFO)

    handler = logging.StreamHandler()
    handler.setLevel(log_level)
    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
    handler.setFormatter(formatter)

    # Replace any existing handlers
    for logger in [app.logger] + [logging.getLogger(name) for name in CORE_LOGGERS]:
        logger.handlers.clear()
        logger.addHandler(handler)
        logger.setLevel(log_level)
        logger.propagate = False


def load_kube_config():
    try:
        config.load_incluster_config()
        app.logger.info("Loaded in-cluster config.")
    except config.ConfigException:
        app.logger.warning("In-cluster config not found. Trying local kubeconfig...")
        config.load_kube_config()
        app.logger.info("Loaded local kubeconfig.")


@lru_cache()
def get_policy_reader():
    load_kube_config()
    return KubernetesPolicyReader(client.CustomObjectsApi())


@lru_cache()
def get_secret_reader():
    load_kube_config()
    return KubernetesSecretReader(client.CoreV1Api())


def admission_response(uid, patches=None, error=None):
    response = {"uid": uid, "allowed": error is None}
    if error is not None:
        response["status"] = {"message": str(error)}
    elif patches:
        response["patchType"] = "JSONPatch"
        response["patch"] = base64.b64encode(json.dumps(patches).encode('utf-8')).decode('utf-8')
    return {
        "kind": "AdmissionReview",
        "apiVersion": "admission.k8s.io/v1",
        "response": response
    }


@app.route('/mutate', methods=['POST'])
def mutate():
    app.logger.debug("Received request to mutate pod.")

    request_data = request.get_json(silent=True)
    if not isinstance(request_data, dict) or not isinstance(request_data.get('request'), dict):
        app.logger.error("Failed to parse AdmissionReview request")
        return Response(status=400)

    admission_request = request_data['request']
    uid = admission_request.get('uid', '')
    app.logger.debug(f"Extracted UID: {uid}")

    try:
        patches = get_pod_patch_operations(
            admission_request,
            NAMESPACE,
            SIDECAR_IMAGE,
            SIDECAR_IMAGE_PULL_POLICY,
            get_policy_reader(),
            get_secret_reader(),
            trust_bundle_namespace=TRUST_BUNDLE_NAMESPACE or None,
        )
    except InjectionError as e:
        app.logger.error(f"Sidecar injector failed to inject for UID {uid}: {e}")
        return jsonify(admission_response(uid, error=e))

    if patches is None:
        app.logger.debug(f"No patch for UID {uid}")
    else:
        app.logger.info(f"Sidecar injector patched UID {uid} with {len(patches)} operations")
    return jsonify(admission_response(uid, patches=patches))


@app.route('/healthz', methods=['GET'])
def healthz():
    return Response(status=200)


if __name__ == '__main__':
    configure_logging()

    if not os.path.exists(TLS_CERT_FILE) or not os.path.exists(TLS_KEY_FILE):
        app.logger.error("Certificates not found. Exiting...")
        exit(1)

    app.run(host='0.0.0.0', port=PORT, ssl_context=(TLS_CERT_FILE, TLS_KEY_FILE))
