from talos_on_hcloud.talos.client import TalosApi, TalosCtl, classify_reset_failure
from talos_on_hcloud.talos.config import ConfigBundleStore, NodeConfigGenerator

__all__ = (
    "ConfigBundleStore",
    "NodeConfigGenerator",
    "TalosApi",
    "TalosCtl",
    "classify_reset_failure",
)
