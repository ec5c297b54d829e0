import typing as t

from configomatic import (
    Configuration as BaseConfiguration,
)
from configomatic import (
    LoggingConfiguration,
    Section,
)
from pydantic import (
    Field,
    conint,
    confloat,
    constr,
    model_validator,
)


class NatsConfiguration(Section):
    """
    Configuration for the NATS server pods managed by the operator.
    """

    #: The image repository for the NATS server
    #: The version from the cluster spec is used as the tag
    image: constr(min_length=1) = "nats"
    #: The name of the NATS server container
    container_name: constr(min_length=1) = "nats-server"
    #: The port that clients connect to
    client_port: conint(gt=0, lt=65536) = 4222
    #: The port that cluster routes connect to
    cluster_port: conint(gt=0, lt=65536) = 6222
    #: The port for the HTTP monitoring endpoint
    monitoring_port: conint(gt=0, lt=65536) = 8222
    #: The directory where the configuration bundle is mounted
    config_mount_path: constr(min_length=1) = "/etc/nats-config"
    #: The name of the configuration file within the bundle
    config_file_name: constr(min_length=1) = "nats.conf"
    #: The directory where the client-facing TLS secret is mounted
    server_tls_mount_path: constr(min_length=1) = "/etc/nats-server-tls-certs"
    #: The directory where the routes TLS secret is mounted
    routes_tls_mount_path: constr(min_length=1) = "/etc/nats-routes-tls-certs"
    #: Overrides that are deep-merged into every generated pod
    #: Lists in the overrides are appended to the generated lists
    pod_overrides: dict[str, t.Any] = Field(default_factory=dict)

    @property
    def config_file_path(self):
        return f"{self.config_mount_path}/{self.config_file_name}"


class ReloaderConfiguration(Section):
    """
    Configuration for the configuration reloader, both as a sidecar and as a process.
    """

    #: Indicates whether the reloader sidecar should be added to NATS pods
    enabled: bool = False
    #: The image to use for the reloader sidecar
    image: constr(min_length=1) = "connecteverything/nats-server-config-reloader:0.2.2-v1alpha2"
    #: The directory shared between the server and the reloader for the PID file
    pid_mount_path: constr(min_length=1) = "/var/run/nats"
    #: The name of the PID file written by the server
    pid_file_name: constr(min_length=1) = "gnatsd.pid"
    #: The maximum number of attempts when locating or signalling the server
    max_retries: conint(ge=0) = 5
    #: The number of seconds to wait between attempts
    retry_wait: confloat(ge=0) = 2
    #: The number of seconds between checks of the configuration file contents
    poll_interval: confloat(gt=0) = 1

    @property
    def pid_file_path(self):
        return f"{self.pid_mount_path}/{self.pid_file_name}"


class MetricsConfiguration(Section):
    """
    Configuration for the metrics endpoint.
    """

    #: Indicates whether the metrics server should be started
    enabled: bool = True
    #: The port for the metrics server
    port: conint(gt=0, lt=65536) = 8080


class Configuration(
    BaseConfiguration,
    default_path="/etc/nats-operator/operator.yaml",
    path_env_var="NATS_OPERATOR_CONFIG",
    env_prefix="NATS_OPERATOR",
):
    """
    Top-level configuration model.
    """

    #: The logging configuration
    logging: LoggingConfiguration = Field(default_factory=LoggingConfiguration)

    #: The API group of the cluster CRDs
    api_group: constr(min_length=1) = "messaging.nats.io"
    #: A list of categories to place CRDs into
    crd_categories: list[constr(min_length=1)] = Field(
        default_factory=lambda: ["nats"]
    )

    #: The prefix to use for operator annotations
    annotation_prefix: str = "messaging.nats.io"

    #: The field manager name to use for server-side apply
    easykube_field_manager: constr(min_length=1) = "nats-operator"

    #: The amount of time (seconds) before a watch is forcefully restarted
    watch_timeout: conint(gt=0) = 600

    #: The namespace to watch for clusters
    #: If not given, clusters in all namespaces are managed
    watch_namespace: constr(min_length=1) | None = None

    #: The number of seconds between reconciliations of each cluster
    reconcile_interval: confloat(gt=0) = 5
    #: The number of seconds to wait for a cluster controller to stop
    stop_grace_period: confloat(gt=0) = 10

    #: The number of seconds between checks that the CRD is established
    crd_poll_interval: confloat(gt=0) = 3
    #: The number of seconds to wait for the CRD to become established
    crd_ready_timeout: confloat(gt=0) = 10 * 60

    #: The NATS server configuration
    nats: NatsConfiguration = Field(default_factory=NatsConfiguration)

    #: The reloader configuration
    reloader: ReloaderConfiguration = Field(default_factory=ReloaderConfiguration)

    #: The metrics configuration
    metrics: MetricsConfiguration = Field(default_factory=MetricsConfiguration)

    @model_validator(mode="after")
    def validate_crd_timings(self):
        """
        Ensures that the CRD is polled at least once before giving up.
        """
        if self.crd_poll_interval > self.crd_ready_timeout:
            raise ValueError("crd_poll_interval must not exceed crd_ready_timeout")
        return self


settings = Configuration()
