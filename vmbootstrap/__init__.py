"""Building blocks for bootstrapping vSphere VMs from installer ISOs: download, patch, seed, upload and mount."""

__version__ = "0.1.0"