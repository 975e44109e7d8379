from talos_on_hcloud.overlay.cilium import CiliumInstaller, OverlayInstaller, get_cilium_values

__all__ = (
    "CiliumInstaller",
    "OverlayInstaller",
    "get_cilium_values",
)
