"""
Genesis State Tool

Creates the initial ledger state from a JSON configuration: mints, token
accounts, the treasury, burn vault, liquidity pool and leaderboards. All
amounts in the configuration are whole tokens.
"""
import argparse
import json
import logging
import time
from pathlib import Path

from flash_trader.accounts import (
    BurnVault,
    Leaderboard,
    LiquidityPool,
    Mint,
    TokenAccount,
    Treasury,
    TOKEN_DECIMALS,
    checked_add,
    checked_mul,
)
from flash_trader.crypto import derive_address, generate_key_pair
from flash_trader.db import DB
from flash_trader.store import AccountStore, ComputeMeter

logger = logging.getLogger(__name__)

GENESIS_UNIT_LIMIT = 10 ** 12


def mint_address(name: str) -> bytes:
    return derive_address('mint', name)


def token_account_address(owner: bytes, mint: bytes) -> bytes:
    return derive_address('token', owner, mint)


def treasury_address(mint: bytes) -> bytes:
    return derive_address('treasury', mint)


def burn_vault_address(mint: bytes) -> bytes:
    return derive_address('burn_vault', mint)


def pool_address(mint: bytes) -> bytes:
    return derive_address('liquidity_pool', mint)


def leaderboard_address(mint: bytes, name: str) -> bytes:
    return derive_address('leaderboard', mint, name)


def apply_genesis(store: AccountStore, config: dict, now: int = None) -> dict:
    """
    Write the genesis accounts through `store` in one commit.

    Returns a mapping of descriptive names to hex identities.
    """
    now = int(time.time()) if now is None else now
    uow = store.begin(ComputeMeter(GENESIS_UNIT_LIMIT))
    created = {}
    mints = {}

    def amount_of(entry: dict, key: str, mint: Mint) -> int:
        return checked_mul(int(entry.get(key, 0)), mint.unit, key)

    def supply(mint: Mint, amount: int):
        mint.supply = checked_add(mint.supply, amount, "genesis supply")

    for entry in config.get('mints', []):
        identity = mint_address(entry['name'])
        authority = bytes.fromhex(entry['authority']) if entry.get('authority') else None
        mint = uow.create(Mint(identity, {
            'authority': authority,
            'decimals': int(entry.get('decimals', TOKEN_DECIMALS)),
        }))
        mints[entry['name']] = mint
        created[f"mint:{entry['name']}"] = identity.hex()
    logger.info(f"Processed {len(mints)} mints.")

    for entry in config.get('token_accounts', []):
        mint = mints[entry['mint']]
        owner = bytes.fromhex(entry['owner'])
        balance = amount_of(entry, 'balance', mint)
        account = uow.create(TokenAccount(token_account_address(owner, mint.identity), {
            'owner': owner,
            'mint': mint.identity,
            'balance': balance,
        }))
        supply(mint, balance)
        created[f"token:{entry['owner']}:{entry['mint']}"] = account.identity.hex()
    logger.info(f"Processed {len(config.get('token_accounts', []))} token accounts.")

    for entry in config.get('treasuries', []):
        mint = mints[entry['mint']]
        balance = amount_of(entry, 'balance', mint)
        treasury = uow.create(Treasury(treasury_address(mint.identity), {
            'authority': bytes.fromhex(entry['authority']),
            'mint': mint.identity,
            'balance': balance,
        }))
        supply(mint, balance)
        created[f"treasury:{entry['mint']}"] = treasury.identity.hex()

        vault = uow.create(BurnVault(burn_vault_address(mint.identity), {'mint': mint.identity}))
        created[f"burn_vault:{entry['mint']}"] = vault.identity.hex()

    for entry in config.get('liquidity_pools', []):
        mint = mints[entry['mint']]
        balance = amount_of(entry, 'balance', mint)
        pool = uow.create(LiquidityPool(pool_address(mint.identity), {
            'authority': bytes.fromhex(entry['authority']),
            'mint': mint.identity,
            'balance': balance,
        }))
        supply(mint, balance)
        created[f"pool:{entry['mint']}"] = pool.identity.hex()

    for entry in config.get('leaderboards', []):
        mint = mints[entry['mint']]
        name = entry.get('name', 'main')
        board = uow.create(Leaderboard(leaderboard_address(mint.identity, name), {
            'authority': bytes.fromhex(entry['authority']),
            'mint': mint.identity,
            'capacity': int(entry.get('capacity', 10)),
            'reset_threshold': int(entry.get('reset_threshold', 1)),
            'created_at': now,
        }))
        created[f"leaderboard:{entry['mint']}:{name}"] = board.identity.hex()
    logger.info(f"Processed {len(config.get('leaderboards', []))} leaderboards.")

    root = uow.commit()
    created['state_root'] = root.hex()
    return created


def create_genesis_state(config_path: str, output_db_path: str) -> dict:
    """
    Initializes a new ledger database from a genesis configuration file.
    """
    logger.info(f"Loading genesis configuration from: {config_path}")
    with open(config_path, 'r') as f:
        config = json.load(f)

    db_path = Path(output_db_path)
    if db_path.exists():
        raise FileExistsError(f"Output database path '{db_path}' already exists. Please remove it first.")

    with DB(str(db_path)) as db:
        created = apply_genesis(AccountStore(db), config)

    logger.info(f"Genesis state created at {db_path}, state root {created['state_root']}")
    return created


def generate_sample_config(output_path: str) -> dict:
    """Generates a sample genesis.json and returns the sample signing keys by identity."""
    admin_key, admin = generate_key_pair()
    trader_key, trader = generate_key_pair()

    config = {
        "mints": [
            {"name": "FLTR", "authority": admin.hex(), "decimals": TOKEN_DECIMALS},
        ],
        "token_accounts": [
            {"owner": admin.hex(), "mint": "FLTR", "balance": 1_000_000},
            {"owner": trader.hex(), "mint": "FLTR", "balance": 10_000},
        ],
        "treasuries": [
            {"authority": admin.hex(), "mint": "FLTR", "balance": 100_000},
        ],
        "liquidity_pools": [
            {"authority": admin.hex(), "mint": "FLTR", "balance": 250_000},
        ],
        "leaderboards": [
            {"authority": admin.hex(), "mint": "FLTR", "name": "main", "capacity": 10, "reset_threshold": 1},
        ],
    }

    with open(output_path, 'w') as f:
        json.dump(config, f, indent=2)

    return {
        admin.hex(): bytes(admin_key).hex(),
        trader.hex(): bytes(trader_key).hex(),
    }


def main(argv=None):
    parser = argparse.ArgumentParser(description="Ledger Genesis Tool")
    subparsers = parser.add_subparsers(dest="command", required=True)

    parser_sample = subparsers.add_parser("sample-config", help="Generate a sample genesis.json")
    parser_sample.add_argument("--output", type=str, default="genesis.json", help="Output file path")

    parser_create = subparsers.add_parser("create", help="Create the genesis state from a config file")
    parser_create.add_argument("--config", type=str, default="genesis.json", help="Path to genesis config file")
    parser_create.add_argument("--output-db", type=str, required=True, help="Path for the new ledger database")

    subparsers.add_parser("keygen", help="Generate a signing key and print its identity")

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    if args.command == "sample-config":
        keys = generate_sample_config(args.output)
        print(f"Generated sample genesis configuration at: {args.output}")
        print("\nSample signing keys (DO NOT USE IN PRODUCTION):")
        for identity, seed in keys.items():
            print(f"  - {identity}: {seed}")
    elif args.command == "create":
        created = create_genesis_state(args.config, args.output_db)
        for name, identity in created.items():
            print(f"  {name}: {identity}")
    elif args.command == "keygen":
        signing_key, identity = generate_key_pair()
        print(f"identity: {identity.hex()}")
        print(f"seed:     {bytes(signing_key).hex()}")
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
