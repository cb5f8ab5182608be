import re

DNS1123_LABEL_MAX_LENGTH = 63
DNS1123_LABEL_FMT = "[a-z0-9]([-a-z0-9]*[a-z0-9])?"
_DNS1123_LABEL = re.compile(DNS1123_LABEL_FMT)

# The app id is exposed as the "<app id>-dapr" service
APP_ID_SERVICE_SUFFIX = "-dapr"


class AppIDValidationError(ValueError):
    """The application id cannot be used to name the sidecar's service."""


def is_dns1123_label(value):
    """Return the reasons value is not a DNS-1123 label, empty when it is."""
    errors = []
    if len(value) > DNS1123_LABEL_MAX_LENGTH:
        errors.append(f"must be no more than {DNS1123_LABEL_MAX_LENGTH} characters")
    if not _DNS1123_LABEL.fullmatch(value):
        errors.append(
            "a DNS-1123 label must consist of lower case alphanumeric characters or '-', "
            "and must start and end with an alphanumeric character "
            f"(regex used for validation is '{DNS1123_LABEL_FMT}')"
        )
    return errors


def validate_kubernetes_app_id(app_id):
    if not app_id:
        raise AppIDValidationError("value for the dapr.io/app-id annotation is empty")
    service = f"{app_id}{APP_ID_SERVICE_SUFFIX}"
    errors = is_dns1123_label(service)
    if errors:
        raise AppIDValidationError(f"invalid app id(input: {app_id}, service: {service}): {','.join(errors)}")
