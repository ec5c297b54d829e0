"""
Builders for the Kubernetes objects that make up a NATS cluster.
"""

from .config import settings
from .models import v1alpha2 as api
from .template import default_loader
from .utils import mergeconcat, random_string


#: The value of the app label for all managed objects
APP_NAME = "nats"

#: The label containing the name of the cluster that an object belongs to
CLUSTER_LABEL = "nats_cluster"

#: The label containing the NATS server version of a pod
VERSION_LABEL = "version"

#: The annotation recording the TLS secrets a pod was created with
TLS_ANNOTATION = f"{settings.annotation_prefix}/tls-secrets"

CONFIG_VOLUME = "config"
SERVER_TLS_VOLUME = "server-tls-certs"
ROUTES_TLS_VOLUME = "routes-tls-certs"
PID_VOLUME = "pid"


def generate_pod_name(cluster_name):
    """
    Returns a new pod name for the cluster with a random suffix.

    Collisions are possible and are handled when the pod is created.
    """
    return f"{cluster_name}-{random_string(5)}"


def routes_service_name(cluster_name):
    return f"{cluster_name}-routes"


def route_address(pod_name, cluster_name, namespace):
    """
    Returns the address at which the pod is reachable by the other cluster members.
    """
    return f"{pod_name}.{routes_service_name(cluster_name)}.{namespace}.svc"


def selector_labels(cluster: api.NatsCluster):
    """
    The labels that identify all the pods belonging to the cluster.
    """
    return {
        "app": APP_NAME,
        CLUSTER_LABEL: cluster.metadata.name,
    }


def identity_labels(cluster: api.NatsCluster):
    """
    The labels applied to the objects of the cluster.
    """
    return {
        **selector_labels(cluster),
        VERSION_LABEL: cluster.spec.version,
    }


def tls_fingerprint(cluster: api.NatsCluster):
    """
    Returns a string identifying the TLS secrets in use by the cluster.
    """
    tls = cluster.spec.tls
    server_secret = tls.server_secret if tls and tls.server_secret else ""
    routes_secret = tls.routes_secret if tls and tls.routes_secret else ""
    return f"server={server_secret};routes={routes_secret}"


def owner_references(cluster: api.NatsCluster):
    """
    Owner references that tie an object to the lifetime of the cluster.
    """
    if not cluster.metadata.uid:
        return []
    return [
        {
            "apiVersion": cluster.api_version,
            "kind": cluster.kind,
            "name": cluster.metadata.name,
            "uid": cluster.metadata.uid,
            "blockOwnerDeletion": True,
            "controller": True,
        },
    ]


def _metadata(cluster, name, labels):
    metadata = {
        "name": name,
        "namespace": cluster.metadata.namespace,
        "labels": labels,
    }
    references = owner_references(cluster)
    if references:
        metadata["ownerReferences"] = references
    return metadata


def routes_service(cluster: api.NatsCluster):
    """
    Returns the headless service that publishes one address per pod for cluster routes.

    Addresses are published before the pods are ready so that the cluster can form.
    """
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(
            cluster,
            routes_service_name(cluster.metadata.name),
            selector_labels(cluster)
        ),
        "spec": {
            "clusterIP": "None",
            "publishNotReadyAddresses": True,
            "selector": selector_labels(cluster),
            "ports": [
                {
                    "name": "cluster",
                    "port": settings.nats.cluster_port,
                    "targetPort": settings.nats.cluster_port,
                    "protocol": "TCP",
                },
            ],
        },
    }


def client_service(cluster: api.NatsCluster):
    """
    Returns the service that application clients connect to.
    """
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(cluster, cluster.metadata.name, selector_labels(cluster)),
        "spec": {
            "publishNotReadyAddresses": True,
            "selector": selector_labels(cluster),
            "ports": [
                {
                    "name": "client",
                    "port": settings.nats.client_port,
                    "targetPort": settings.nats.client_port,
                    "protocol": "TCP",
                },
            ],
        },
    }


def _tls_files(mount_path, cert_name):
    return {
        "ca_file": f"{mount_path}/ca.pem",
        "cert_file": f"{mount_path}/{cert_name}.pem",
        "key_file": f"{mount_path}/{cert_name}-key.pem",
    }


def render_config(cluster: api.NatsCluster, routes):
    """
    Renders the NATS server configuration for the cluster with the given route addresses.
    """
    tls = cluster.spec.tls
    return default_loader.render(
        "nats.conf",
        ports = {
            "client": settings.nats.client_port,
            "cluster": settings.nats.cluster_port,
            "monitoring": settings.nats.monitoring_port,
        },
        server_config = cluster.spec.server_config,
        routes = routes,
        server_tls = (
            _tls_files(settings.nats.server_tls_mount_path, "server")
            if tls and tls.server_secret
            else None
        ),
        routes_tls = (
            _tls_files(settings.nats.routes_tls_mount_path, "route")
            if tls and tls.routes_secret
            else None
        )
    )


def config_map(cluster: api.NatsCluster, document):
    """
    Returns the configuration bundle shared by all the pods of the cluster.
    """
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": _metadata(cluster, cluster.metadata.name, selector_labels(cluster)),
        "data": {
            settings.nats.config_file_name: document,
        },
    }


def nats_container(cluster: api.NatsCluster):
    command = ["/gnatsd", "-c", settings.nats.config_file_path]
    volume_mounts = [
        {
            "name": CONFIG_VOLUME,
            "mountPath": settings.nats.config_mount_path,
            "readOnly": True,
        },
    ]
    tls = cluster.spec.tls
    if tls and tls.server_secret:
        volume_mounts.append(
            {
                "name": SERVER_TLS_VOLUME,
                "mountPath": settings.nats.server_tls_mount_path,
                "readOnly": True,
            }
        )
    if tls and tls.routes_secret:
        volume_mounts.append(
            {
                "name": ROUTES_TLS_VOLUME,
                "mountPath": settings.nats.routes_tls_mount_path,
                "readOnly": True,
            }
        )
    if settings.reloader.enabled:
        command.extend(["-P", settings.reloader.pid_file_path])
        volume_mounts.append(
            {
                "name": PID_VOLUME,
                "mountPath": settings.reloader.pid_mount_path,
            }
        )
    return {
        "name": settings.nats.container_name,
        "image": f"{settings.nats.image}:{cluster.spec.version}",
        "command": command,
        "ports": [
            {
                "name": "client",
                "containerPort": settings.nats.client_port,
                "protocol": "TCP",
            },
            {
                "name": "cluster",
                "containerPort": settings.nats.cluster_port,
                "protocol": "TCP",
            },
            {
                "name": "monitoring",
                "containerPort": settings.nats.monitoring_port,
                "protocol": "TCP",
            },
        ],
        "livenessProbe": {
            "httpGet": {
                "path": "/",
                "port": settings.nats.monitoring_port,
            },
            "initialDelaySeconds": 10,
            "timeoutSeconds": 5,
        },
        "volumeMounts": volume_mounts,
    }


def reloader_container():
    return {
        "name": "reloader",
        "image": settings.reloader.image,
        "command": [
            "nats-server-config-reloader",
            "-P",
            settings.reloader.pid_file_path,
            "-c",
            settings.nats.config_file_path,
        ],
        "volumeMounts": [
            {
                "name": CONFIG_VOLUME,
                "mountPath": settings.nats.config_mount_path,
                "readOnly": True,
            },
            {
                "name": PID_VOLUME,
                "mountPath": settings.reloader.pid_mount_path,
            },
        ],
    }


def pod(cluster: api.NatsCluster, name):
    """
    Returns the definition of a NATS server pod with the given name.

    The pod name doubles as the hostname and the routes service is the subdomain,
    so the pod is reachable at the route address used in the configuration.
    """
    volumes = [
        {
            "name": CONFIG_VOLUME,
            "configMap": {
                "name": cluster.metadata.name,
            },
        },
    ]
    tls = cluster.spec.tls
    if tls and tls.server_secret:
        volumes.append(
            {
                "name": SERVER_TLS_VOLUME,
                "secret": {
                    "secretName": tls.server_secret,
                },
            }
        )
    if tls and tls.routes_secret:
        volumes.append(
            {
                "name": ROUTES_TLS_VOLUME,
                "secret": {
                    "secretName": tls.routes_secret,
                },
            }
        )
    containers = [nats_container(cluster)]
    spec = {
        "hostname": name,
        "subdomain": routes_service_name(cluster.metadata.name),
        # Replacing failed pods is the responsibility of the controller
        "restartPolicy": "Never",
        "containers": containers,
        "volumes": volumes,
    }
    if settings.reloader.enabled:
        containers.append(reloader_container())
        volumes.append({"name": PID_VOLUME, "emptyDir": {}})
        spec["shareProcessNamespace"] = True
    metadata = _metadata(cluster, name, identity_labels(cluster))
    metadata["annotations"] = {TLS_ANNOTATION: tls_fingerprint(cluster)}
    return mergeconcat(
        {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": metadata,
            "spec": spec,
        },
        settings.nats.pod_overrides
    )
