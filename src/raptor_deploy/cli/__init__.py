"""raptor-deploy command line interface."""
