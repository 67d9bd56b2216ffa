"""DeployGate: scan, policy and approval gates in front of staged Kubernetes promotions."""

__version__ = "0.1.0"
