"""Default values and constants for gateway-operator."""

import os

# Operator name
OPERATOR_NAME = "gateway-operator"

# =============================================================================
# API Groups, Versions and Plurals
# =============================================================================

OPERATOR_GROUP = "gateway-operator.konghq.com"
OPERATOR_VERSION = "v1beta1"
DATAPLANE_KIND = "DataPlane"
DATAPLANE_PLURAL = "dataplanes"

KONNECT_GROUP = "konnect.konghq.com"
KONNECT_VERSION = "v1alpha1"
KONNECT_CP_VERSION = "v1alpha2"
KONNECT_EXTENSION_KIND = "KonnectExtension"
KONNECT_EXTENSION_PLURAL = "konnectextensions"
KONNECT_AUTH_KIND = "KonnectAPIAuthConfiguration"
KONNECT_AUTH_PLURAL = "konnectapiauthconfigurations"
KONNECT_CONTROL_PLANE_KIND = "KonnectGatewayControlPlane"
KONNECT_CONTROL_PLANE_PLURAL = "konnectgatewaycontrolplanes"

CONFIGURATION_GROUP = "configuration.konghq.com"
CONFIGURATION_VERSION = "v1alpha1"

# =============================================================================
# Component Images (configurable via environment variables)
# =============================================================================

DEFAULT_DATAPLANE_IMAGE = os.getenv("DATAPLANE_DEFAULT_IMAGE", "kong:3.9")

# =============================================================================
# Default Resources
# =============================================================================

DEFAULT_CPU_REQUEST = os.getenv("DEFAULT_CPU_REQUEST", "100m")
DEFAULT_MEMORY_REQUEST = os.getenv("DEFAULT_MEMORY_REQUEST", "20Mi")
DEFAULT_CPU_LIMIT = os.getenv("DEFAULT_CPU_LIMIT", "1")
DEFAULT_MEMORY_LIMIT = os.getenv("DEFAULT_MEMORY_LIMIT", "1000Mi")

# =============================================================================
# Requeue and Backoff (seconds)
# =============================================================================

REQUEUE_WAITING_SECONDS = float(os.getenv("REQUEUE_WAITING_SECONDS", "5"))
REQUEUE_SLOW_SECONDS = float(os.getenv("REQUEUE_SLOW_SECONDS", "60"))
BACKOFF_BASE_SECONDS = float(os.getenv("BACKOFF_BASE_SECONDS", "1"))
BACKOFF_MAX_SECONDS = float(os.getenv("BACKOFF_MAX_SECONDS", "300"))
KONNECT_SYNC_PERIOD_SECONDS = float(os.getenv("KONNECT_SYNC_PERIOD_SECONDS", "60"))
KONNECT_API_TIMEOUT_SECONDS = float(os.getenv("KONNECT_API_TIMEOUT_SECONDS", "30"))
KONNECT_CLIENT_IDLE_SECONDS = float(os.getenv("KONNECT_CLIENT_IDLE_SECONDS", "600"))

# =============================================================================
# Ports
# =============================================================================

PROXY_PORT = 8000
PROXY_SSL_PORT = 8443
METRICS_PORT = 8100
ADMIN_SSL_PORT = 8444

DEFAULT_INGRESS_SERVICE_PORTS = [
    {"name": "http", "port": 80, "targetPort": PROXY_PORT, "protocol": "TCP"},
    {"name": "https", "port": 443, "targetPort": PROXY_SSL_PORT, "protocol": "TCP"},
]

# =============================================================================
# Proxy container
# =============================================================================

PROXY_CONTAINER_NAME = "proxy"

STATUS_PATH = "/status"
STATUS_READY_PATH = "/status/ready"

# Operator managed default environment of the proxy container.
PROXY_DEFAULT_ENV = {
    "KONG_DATABASE": "off",
    "KONG_PROXY_LISTEN": f"0.0.0.0:{PROXY_PORT} reuseport backlog=16384, 0.0.0.0:{PROXY_SSL_PORT} http2 ssl reuseport backlog=16384",
    "KONG_ADMIN_LISTEN": f"0.0.0.0:{ADMIN_SSL_PORT} http2 ssl reuseport backlog=16384",
    "KONG_STATUS_LISTEN": f"0.0.0.0:{METRICS_PORT}",
    "KONG_PORT_MAPS": f"80:{PROXY_PORT}, 443:{PROXY_SSL_PORT}",
    "KONG_NGINX_WORKER_PROCESSES": "2",
    "KONG_ADMIN_SSL_CERT": "/var/cluster-certificate/tls.crt",
    "KONG_ADMIN_SSL_CERT_KEY": "/var/cluster-certificate/tls.key",
    "KONG_CLUSTER_CERT": "/var/cluster-certificate/tls.crt",
    "KONG_CLUSTER_CERT_KEY": "/var/cluster-certificate/tls.key",
}

# =============================================================================
# Volumes
# =============================================================================

CLUSTER_CERT_VOLUME = "cluster-certificate"
CLUSTER_CERT_MOUNT_PATH = "/var/cluster-certificate"

KONNECT_CERT_VOLUME = "kong-cluster-cert"
KONNECT_CERT_MOUNT_PATH = "/etc/secrets/kong-cluster-cert"

# =============================================================================
# Labels
# =============================================================================

LABEL_MANAGED_BY = "gateway-operator.konghq.com/managed-by"
LABEL_SELECTOR = "gateway-operator.konghq.com/selector"
LABEL_SERVICE_TYPE = "gateway-operator.konghq.com/dataplane-service-type"
LABEL_SERVICE_STATE = "gateway-operator.konghq.com/dataplane-service-state"
LABEL_DEPLOYMENT_STATE = "gateway-operator.konghq.com/dataplane-deployment-state"
LABEL_CERT_PURPOSE = "gateway-operator.konghq.com/certificate-purpose"
LABEL_APP = "app"

MANAGED_BY_DATAPLANE = "dataplane"
MANAGED_BY_KONNECT_EXTENSION = "konnectextension"

SERVICE_TYPE_INGRESS = "ingress"
SERVICE_TYPE_ADMIN = "admin"
STATE_LIVE = "live"
CERT_PURPOSE_CLUSTER = "cluster"

# =============================================================================
# Annotations and Finalizers
# =============================================================================

ANNOTATION_LAST_APPLIED = "gateway-operator.konghq.com/last-applied-annotations"

FINALIZER_EXTENSION_IN_USE = "gateway-operator.konghq.com/extension-in-use"
FINALIZER_KONNECT_CLEANUP = "konnect.konghq.com/delete"
FINALIZER_IN_USE_TEMPLATE = "konnect.konghq.com/{kind}-in-use"

# =============================================================================
# Konnect
# =============================================================================

DEFAULT_KONNECT_SERVER_URL = os.getenv("KONNECT_SERVER_URL", "us.api.konghq.com")
KONNECT_CERT_SECRET_SUFFIX = "konnect-client-cert"

PROVISIONING_MANUAL = "Manual"
PROVISIONING_AUTOMATIC = "Automatic"
