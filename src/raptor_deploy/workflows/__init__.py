"""Multi-step workflows: azd hooks, image resolution, deploy and promote."""
