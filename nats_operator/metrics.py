import asyncio
import functools

from aiohttp import web

from .config import settings
from .resources import APP_NAME, CLUSTER_LABEL


class Metric:
    # The prefix for the metric
    prefix = None
    # The suffix for the metric
    suffix = None
    # The type of the metric - info or gauge
    type = "info"
    # The description of the metric
    description = None

    def __init__(self):
        self._objs = []

    def add_obj(self, obj):
        self._objs.append(obj)

    @property
    def name(self):
        return f"{self.prefix}_{self.suffix}"

    def labels(self, obj):
        """The labels for the given object."""
        return {**self.common_labels(obj), **self.extra_labels(obj)}

    def common_labels(self, obj):
        """Common labels for the object."""
        return {}

    def extra_labels(self, obj):
        """Extra labels for the object."""
        return {}

    def value(self, obj):
        """The value for the given object."""
        return 1

    def records(self):
        """Returns the records for the metric, i.e. a list of (labels, value) tuples."""
        for obj in self._objs:
            yield self.labels(obj), self.value(obj)


class ClusterMetric(Metric):
    prefix = "nats_operator_cluster"

    def common_labels(self, obj):
        return {
            "cluster_namespace": obj["metadata"]["namespace"],
            "cluster_name": obj["metadata"]["name"],
        }


class PodMetric(Metric):
    prefix = "nats_operator_pod"

    def add_obj(self, obj):
        # Other workloads may also use the app label
        if CLUSTER_LABEL in obj["metadata"].get("labels", {}):
            super().add_obj(obj)

    def common_labels(self, obj):
        return {
            "cluster_namespace": obj["metadata"]["namespace"],
            "cluster_name": obj["metadata"]["labels"][CLUSTER_LABEL],
            "pod": obj["metadata"]["name"],
        }


class ClusterSize(ClusterMetric):
    suffix = "size"
    type = "gauge"
    description = "The declared number of servers in the cluster"

    def value(self, obj):
        return obj["spec"].get("size", 0)


class ClusterVersion(ClusterMetric):
    suffix = "version"
    description = "The NATS server version of the cluster"

    def extra_labels(self, obj):
        return {"version": obj["spec"].get("version", "")}


class ClusterTLSEnabled(ClusterMetric):
    suffix = "tls_enabled"
    type = "gauge"
    description = "Indicates whether TLS is enabled for clients and routes"

    def records(self):
        for obj in self._objs:
            labels = super().labels(obj)
            tls = obj["spec"].get("tls") or {}
            yield {**labels, "listener": "client"}, 1 if tls.get("serverSecret") else 0
            yield {**labels, "listener": "routes"}, 1 if tls.get("routesSecret") else 0


class PodPhase(PodMetric):
    suffix = "phase"
    description = "The phase of each NATS server pod"

    def extra_labels(self, obj):
        return {
            "version": obj["metadata"]["labels"].get("version", ""),
            "phase": obj.get("status", {}).get("phase", "Unknown"),
        }


def escape(content):
    """Escape the given content for use in metric output."""
    return content.replace("\\", r"\\").replace("\n", r"\n").replace('"', r"\"")


def format_value(value):
    """Formats a value for output, e.g. using Go formatting."""
    formatted = repr(value)
    dot = formatted.find(".")
    if value > 0 and dot > 6:
        mantissa = f"{formatted[0]}.{formatted[1:dot]}{formatted[dot + 1:]}".rstrip(
            "0."
        )
        return f"{mantissa}e+0{dot - 1}"
    else:
        return formatted


def render_openmetrics(*metrics):
    """Renders the metrics using OpenMetrics text format."""
    output = []
    for metric in metrics:
        if metric.description:
            output.append(f"# HELP {metric.name} {escape(metric.description)}\n")
        output.append(f"# TYPE {metric.name} {metric.type}\n")

        for labels, value in metric.records():
            if labels:
                labelstr = "{{{0}}}".format(
                    ",".join([f'{k}="{escape(v)}"' for k, v in sorted(labels.items())])
                )
            else:
                labelstr = ""
            output.append(f"{metric.name}{labelstr} {format_value(value)}\n")
    output.append("# EOF\n")

    return (
        "application/openmetrics-text; version=1.0.0; charset=utf-8",
        "".join(output).encode("utf-8"),
    )


#: The metrics to produce, as (api version, resource, label selector, metric classes)
METRICS = [
    (
        f"{settings.api_group}/v1alpha2",
        "natsclusters",
        None,
        [ClusterSize, ClusterVersion, ClusterTLSEnabled],
    ),
    (
        "v1",
        "pods",
        {"app": APP_NAME},
        [PodPhase],
    ),
]


async def metrics_handler(ekclient, request):
    """Produce metrics for the operator."""
    metrics = []
    for api_version, resource, labels, metric_classes in METRICS:
        ekresource = await ekclient.api(api_version).resource(resource)
        resource_metrics = [klass() for klass in metric_classes]
        params = {"labels": labels} if labels else {}
        async for obj in ekresource.list(all_namespaces=True, **params):
            for metric in resource_metrics:
                metric.add_obj(obj)
        metrics.extend(resource_metrics)

    content_type, content = render_openmetrics(*metrics)
    return web.Response(headers={"Content-Type": content_type}, body=content)


async def metrics_server(ekclient):
    """Launch a lightweight HTTP server to serve the metrics endpoint."""
    app = web.Application()
    app.add_routes([web.get("/metrics", functools.partial(metrics_handler, ekclient))])

    runner = web.AppRunner(app, handle_signals=False)
    await runner.setup()

    site = web.TCPSite(runner, "0.0.0.0", settings.metrics.port, shutdown_timeout=1.0)
    await site.start()

    # Sleep until we need to clean up
    try:
        await asyncio.Event().wait()
    finally:
        await asyncio.shield(runner.cleanup())
