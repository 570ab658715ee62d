"""appset — directory-discovery reconciliation engine for GitOps deployments."""

__version__ = "0.1.0"
