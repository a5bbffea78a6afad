"""azavset - move Azure VMs into or out of an Availability Set

Philosophy:
- Ruthless simplicity
- Brick architecture (self-contained modules)
- Validate everything before touching a live VM
- Always leave an audit trail on disk

Azure cannot change a VM's availability set in place. azavset exports the
resource group template, rewrites the VM (and NIC) declarations, deletes the
live VM and redeploys the edited template so the VM comes back attached to
its existing disks.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
