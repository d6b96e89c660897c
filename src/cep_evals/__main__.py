"""Entry point for ``python -m cep_evals``."""

import sys

from cep_evals.cli import main

if __name__ == "__main__":
    sys.exit(main())
