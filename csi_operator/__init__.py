"""Object hooks, an in-memory cluster view and an EBS volume tag reconciler for CSI driver operators."""

__version__ = "0.1.0"