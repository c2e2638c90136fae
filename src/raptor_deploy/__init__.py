"""
raptor-deploy - provisioning and deployment helpers for the raptor app on
Azure Container Apps.

Packages:
- raptor_deploy.azure: ``az``/``azd`` wrappers (ACR, Container Apps, Key Vault, SQL)
- raptor_deploy.workflows: azd hooks, image resolution, fast-path deploy/promote
- raptor_deploy.cli: the ``raptor-deploy`` command line
"""

__version__ = "0.1.0"
