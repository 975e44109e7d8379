from talos_on_hcloud.ctl.ctl import TalosOnHcloudCtl
from talos_on_hcloud.ctl.log import TalosOnHcloudCtlConsoleLogger, TalosOnHcloudCtlLogger

__all__ = (
    "TalosOnHcloudCtl",
    "TalosOnHcloudCtlConsoleLogger",
    "TalosOnHcloudCtlLogger",
)
