from . import v1alpha2
