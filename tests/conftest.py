import os
import sys
from pathlib import Path

os.environ.setdefault("ETH_RPC_URL", "http://localhost:8545")
os.environ.setdefault("LEDGER_URL", "http://localhost:54321")
os.environ.setdefault("KEEPER_DRY_RUN", "true")

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))
