from kube_custom_resource import CustomResource, schema
from pydantic import Field

__all__ = [
    "NatsClusterTLSConfig",
    "ServerConfig",
    "NatsClusterSpec",
    "NatsCluster",
]


class NatsClusterTLSConfig(schema.BaseModel):
    """
    The optional TLS configuration for a NATS cluster.
    """

    server_secret: schema.Optional[schema.constr(min_length=1)] = Field(
        None,
        description=(
            "The name of the secret containing the certificates used to secure "
            "the port that clients connect to."
        ),
    )
    routes_secret: schema.Optional[schema.constr(min_length=1)] = Field(
        None,
        description=(
            "The name of the secret containing the certificates used to secure "
            "the port that cluster routes connect to."
        ),
    )


class ServerConfig(schema.BaseModel):
    """
    Options that are passed through to the NATS server configuration.
    """

    debug: bool = Field(False, description="Indicates if debug logging is enabled.")
    trace: bool = Field(False, description="Indicates if trace logging is enabled.")


class NatsClusterSpec(schema.BaseModel):
    """
    The spec for a NATS cluster.
    """

    size: schema.conint(ge=0) = Field(
        ..., description="The number of NATS servers in the cluster."
    )
    version: schema.constr(min_length=1) = Field(
        "1.4.0", description="The NATS server release that the cluster will use."
    )
    tls: schema.Optional[NatsClusterTLSConfig] = Field(
        None, description="The TLS configuration for the cluster."
    )
    server_config: ServerConfig = Field(
        default_factory=ServerConfig,
        description="Options for the NATS server configuration.",
    )


class NatsCluster(
    CustomResource,
    printer_columns=[
        {
            "name": "Size",
            "type": "integer",
            "jsonPath": ".spec.size",
        },
        {
            "name": "Version",
            "type": "string",
            "jsonPath": ".spec.version",
        },
    ],
):
    """
    A NATS cluster.
    """

    spec: NatsClusterSpec

    @property
    def key(self):
        """
        The (namespace, name) pair that identifies the cluster.
        """
        return (self.metadata.namespace, self.metadata.name)
