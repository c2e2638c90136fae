"""Azure CLI backed operations: registry, Container Apps, Key Vault and SQL."""

from raptor_deploy.azure.acr import Registry, RepositoryState, ensure_acr
from raptor_deploy.azure.containerapp import ensure_acr_binding, update_container_app_image
from raptor_deploy.azure.runner import AzdEnvironment, AzureCli, CommandRunner

__all__ = [
    "AzdEnvironment",
    "AzureCli",
    "CommandRunner",
    "Registry",
    "RepositoryState",
    "ensure_acr",
    "ensure_acr_binding",
    "update_container_app_image",
]
