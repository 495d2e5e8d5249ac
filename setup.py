from setuptools import setup, find_packages

setup(
    name="flash-trader-ledger",
    version="0.1.0",
    packages=find_packages(include=["flash_trader", "flash_trader.*"]),
    install_requires=[
        "msgpack",         # account and instruction encoding
        "rlp",             # trie nodes
        "plyvel",          # LevelDB storage
        "PyNaCl",          # ed25519
        "pycryptodome",    # keccak
        "psutil",          # monitoring
        "prometheus_client",
    ],
    extras_require={
        "test": ["pytest"],
    },
    entry_points={
        "console_scripts": [
            "flash-trader-genesis=flash_trader.genesis:main",
        ],
    },
)
