from .nats_cluster import *
