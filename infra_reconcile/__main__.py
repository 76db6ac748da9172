"""infra-reconcile command line tool."""

from infra_reconcile.tool.cli import main

if __name__ == "__main__":
    main()
