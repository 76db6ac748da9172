"""Command line tool for infra-reconcile."""
