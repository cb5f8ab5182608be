CONTAINERS_PATH = "/spec/containers"


def add_operation(path, value):
    return {
        "op": "add",
        "path": path,
        "value": value
    }


def append_path(path):
    """Path that appends to the list at path, whatever its current length."""
    return f"{path}/-"


def container_path(index):
    return f"{CONTAINERS_PATH}/{index}"


def container_env_path(index):
    return f"{container_path(index)}/env"


def get_container_patch_operation(containers, sidecar):
    """Insert the sidecar into the container list.

    An empty list gets replaced by a list holding only the sidecar, otherwise
    the sidecar is appended after the existing containers.
    """
    if not containers:
        return add_operation(CONTAINERS_PATH, [sidecar])
    return add_operation(append_path(CONTAINERS_PATH), sidecar)


def get_env_patch_operations(envs, add_envs, path):
    """Only add new environment variables if they do not exist.

    Existing values for those variables are never overwritten, whether they
    were defined by the user or injected earlier.
    """
    if not envs:
        # The env list may not exist yet, so initialize it in one operation
        return [add_operation(path, [dict(env) for env in add_envs])]

    existing = {env.get("name") for env in envs}
    return [
        add_operation(append_path(path), dict(env))
        for env in add_envs
        if env["name"] not in existing
    ]


def add_env_vars_to_containers(containers, add_envs):
    """Expose add_envs to every container in the original container list."""
    patches = []
    for index, container in enumerate(containers):
        envs = container.get("env") or []
        patches.extend(get_env_patch_operations(envs, add_envs, container_env_path(index)))
    return patches
