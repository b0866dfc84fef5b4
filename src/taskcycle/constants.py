"""Taskcycle constants: workspace layout, job tables, and work-source defaults.

`policy.yaml` in the packaged scaffold is the canonical source of scheduler
defaults; the values in `taskcycle.models.SchedulerConfig` mirror it so that a
workspace without a policy file behaves the same as a freshly initialized one.
"""

from __future__ import annotations

from pathlib import Path

PACKAGE_SCAFFOLD_DIR = Path(__file__).resolve().parent / "scaffold" / ".taskcycle"
WORKSPACE_DIRNAME = ".taskcycle"
STATE_FILENAME = "state.json"
POLICY_FILENAME = "policy.yaml"
JOBS_FILENAME = "jobs_list.txt"
ENDPOINTS_FILENAME = "endpoints.txt"
REPOSITORIES_FILENAME = "repos.txt"
TOPICS_FILENAME = "topics.txt"

LOCK_STALE_SECONDS = 30 * 60
STATE_HISTORY_MAX_ENTRIES = 200

# ---------------------------------------------------------------------------
# Job tables
# ---------------------------------------------------------------------------

JOB_MARKER = "JOB "
JOB_BULLET = "-"

# Start order for phase 3: immediate-value jobs, continuous systems,
# infrastructure, then long-term projects.
PRIORITY_ORDER: tuple[int, ...] = (
    tuple(range(1, 6))
    + tuple(range(13, 18))
    + tuple(range(6, 13))
    + tuple(range(18, 22))
)

JOB_VALUE_TABLE: dict[int, float] = {
    1: 10.0,
    2: 0.1,
    3: 5.0,
    13: 0.5,
    14: 1.2,
    21: 0.01,
}
DEFAULT_JOB_VALUE = 0.1

_BAND_IMMEDIATE = "Immediate value generation"
_BAND_CONTINUOUS = "Continuous system, keeps running once successful"
_BAND_INFRASTRUCTURE = "Infrastructure development"
_BAND_LONG_TERM = "Long-term project"

DEFAULT_JOB_TABLE: tuple[tuple[int, str, str], ...] = (
    (1, "Contract audit sweep", _BAND_IMMEDIATE),
    (2, "Gas usage optimizer", _BAND_IMMEDIATE),
    (3, "Market data aggregator", _BAND_IMMEDIATE),
    (4, "Token metadata indexer", _BAND_IMMEDIATE),
    (5, "Event log summarizer", _BAND_IMMEDIATE),
    (6, "Local devnet harness", _BAND_INFRASTRUCTURE),
    (7, "Contract template library", _BAND_INFRASTRUCTURE),
    (8, "Deployment dry-run pipeline", _BAND_INFRASTRUCTURE),
    (9, "ABI registry", _BAND_INFRASTRUCTURE),
    (10, "Testnet faucet monitor", _BAND_INFRASTRUCTURE),
    (11, "Node health probe", _BAND_INFRASTRUCTURE),
    (12, "Transaction simulator", _BAND_INFRASTRUCTURE),
    (13, "Collectible catalog", _BAND_CONTINUOUS),
    (14, "Price spread watcher", _BAND_CONTINUOUS),
    (15, "Liquidity pool tracker", _BAND_CONTINUOUS),
    (16, "Governance proposal digest", _BAND_CONTINUOUS),
    (17, "Oracle feed checker", _BAND_CONTINUOUS),
    (18, "Rollup research notes", _BAND_LONG_TERM),
    (19, "Cross-chain bridge study", _BAND_LONG_TERM),
    (20, "Zero-knowledge primer", _BAND_LONG_TERM),
    (21, "Proof-of-work benchmark", _BAND_CONTINUOUS),
)

# ---------------------------------------------------------------------------
# Work-source defaults
# ---------------------------------------------------------------------------

DEFAULT_ENDPOINTS: tuple[str, ...] = (
    "https://ethereum.org/en/developers/docs/",
    "https://docs.soliditylang.org/",
    "https://web3js.readthedocs.io/",
)
DEFAULT_REPOSITORIES: tuple[str, ...] = (
    "ethereum/go-ethereum",
    "ethereum/solidity",
    "OpenZeppelin/openzeppelin-contracts",
    "ethers-io/ethers.js",
    "foundry-rs/foundry",
)
DEFAULT_TOPICS: tuple[str, ...] = (
    "blockchain",
    "ethereum",
    "smart-contracts",
    "defi",
    "web3",
    "solidity",
    "layer2",
    "oracle",
)
CONTENT_CATEGORIES: tuple[str, ...] = (
    "blockchain",
    "solidity",
    "ethereum",
    "web3",
    "contracts",
    "tutorials",
)

# ---------------------------------------------------------------------------
# Decision kinds
# ---------------------------------------------------------------------------

DECISION_PROGRESS = "progress"
DECISION_SANDBOX_SUCCESS = "sandbox_success"
DECISION_DEPLOYMENT = "deployment"
DECISION_LEARNING_REVERSION = "learning_reversion"

TERMINAL_REASON_CYCLE_CAP = "cycle_cap_reached"
TERMINAL_REASON_ALL_JOBS_TERMINAL = "all_jobs_terminal"
