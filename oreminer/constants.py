"""
ORE Miner Constants

Protocol addresses, wire sizes and relay endpoints, plus the logging
settings read from `.env`.
"""
from dotenv import dotenv_values

# =============================================================================
# ENVIRONMENT (.env)
# =============================================================================
_env_file = dotenv_values(".env")


def _env(key: str, default: str) -> str:
    value = _env_file.get(key)
    if value is None or not value.strip():
        return default
    return value.strip()


def _env_flag(key: str, default: bool) -> bool:
    value = _env(key, "").casefold()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    return default


DEFAULT_LOG_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'
DEFAULT_LOG_DATE_FORMAT = '%Y-%m-%dT%H:%M:%S'

LOG_LEVEL = _env('LOG_LEVEL', 'INFO')
LOG_FORMAT = _env('LOG_FORMAT', DEFAULT_LOG_FORMAT)
LOG_DATE_FORMAT = _env('LOG_DATE_FORMAT', DEFAULT_LOG_DATE_FORMAT)
LOG_CONSOLE_HIGHLIGHTING = _env_flag('LOG_CONSOLE_HIGHLIGHTING', True)
LOG_FILE_OUTPUT = _env_flag('LOG_FILE_OUTPUT', False)
LOG_FILE = _env('LOG_FILE', 'logs/ore-miner.log')
LOG_MAX_FILE_SIZE = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5


# ==================================================================================
# SOLANA PARAMETERS
# ==================================================================================
LAMPORTS_PER_SOL = 1_000_000_000
FEE_PER_SIGNER = 5000  # Base fee per signature, in lamports
DEFAULT_RPC_URL = 'https://api.mainnet-beta.solana.com'

SYSTEM_PROGRAM_ID = '11111111111111111111111111111111'
SYSVAR_CLOCK_ID = 'SysvarC1ock11111111111111111111111111111111'
SYSVAR_SLOT_HASHES_ID = 'SysvarS1otHashes111111111111111111111111111'
TOKEN_PROGRAM_ID = 'TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA'
ASSOCIATED_TOKEN_PROGRAM_ID = 'ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL'

CONFIRMED_STATUSES = ('confirmed', 'finalized')
SLOT_EXPIRATION = 151 + 5  # blockhash lifetime in slots plus a margin


# ==================================================================================
# ORE PROGRAM PARAMETERS
# ==================================================================================
ORE_PROGRAM_ID = 'mineRHF5r6S7HyD9SppBfVMXMavDkJsxwGesEvxZr2A'
ORE_TREASURY_SEED = b'treasury'
ORE_BUS_SEED = b'bus'
ORE_PROOF_SEED = b'proof'
ORE_BUS_COUNT = 8
ORE_EPOCH_DURATION = 60  # seconds between treasury resets
ORE_MINT_ID = 'oreoN2tQbHXVaZsr3pf66A48miqcBXCDJozganhEJgz'
ORE_TOKEN_DECIMALS = 9
ACCOUNT_INSTRUCTIONS_PER_TX = 5  # register and claim instructions per transaction
CLAIM_RECHECK_INTERVAL = 300  # seconds between claim rounds with --auto


# ==================================================================================
# SEARCH PARAMETERS
# ==================================================================================
PREIMAGE_SIZE = 64  # challenge hash (32) || authority pubkey (32)
NONCE_SIZE = 8
MESSAGE_SIZE = PREIMAGE_SIZE + NONCE_SIZE
DIGEST_SIZE = 32
NONCE_SPACE = 2 ** 64
CPU_BATCH_SIZE = 4096  # nonces per worker between found-flag checks
GPU_POLL_INTERVAL = 0.001  # seconds between kernel completion queries


# ==================================================================================
# JITO RELAY PARAMETERS
# ==================================================================================
JITO_BLOCK_ENGINE_URL = 'https://mainnet.block-engine.jito.wtf/api/v1/bundles'
JITO_TIP_FLOOR_URL = 'https://bundles.jito.wtf/api/v1/bundles/tip_floor'
MAX_BUNDLE_SIZE = 5  # Jito executes at most 5 transactions per bundle

JITO_TIP_ACCOUNTS = (
    '96gYZGLnJYVFmbjzopPSU6QiEV5fGqZNyN9nmNhvrZU5',
    'HFqU5x63VTqvQss8hp11i4wVV8bD44PvwucfZ2bU7gRe',
    'Cw8CFyM9FkoMi7K7Crf6HNQqf4uEMzpKw6QNghXLvLkY',
    'ADaUMid9yfUytqMBgopwjb2DTLSokTSzL1zt6iGPaS49',
    'DfXygSm4jCyNCybVYYK6DwvWqjKee8pbDmJGcLWNDXjh',
    'ADuUkR4vqLUMWXxW9gh6D6L8pMSawimctcNZ5pGwDcEt',
    'DttWaMuVvTiduZRnguLF7jNxTgiMBZ1hyAumKUiL2KRL',
    '3AVi9Tg9Uo68tJfuvoKvqKNWKkC5wPdSSdeBnizKZ6jT',
)

