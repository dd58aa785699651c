"""Initialize the Shop Ledger workbook from the repository root.

Equivalent to ``shop-ledger init``; run ``python setup_excel.py --help`` for
options. The schema itself lives in :mod:`shop_ledger.setup_excel`.
"""

from __future__ import annotations

import sys

from shop_ledger.setup_excel import main

if __name__ == "__main__":  # pragma: no cover - exercised via manual runs
    sys.exit(main())
