"""Shared constants for the sniper bot."""

LAMPORTS_PER_SOL = 1_000_000_000

WSOL_MINT = "So11111111111111111111111111111111111111112"

# Raydium liquidity pool v4 program.
RAYDIUM_AMM_V4_PROGRAM_ID = "675kPX9MHTjS2zt1qfr1NYHuzeLXfQM9H24wFSUt1Mp8"
OPENBOOK_PROGRAM_ID = "srmqPvymJeFKQ4zGQed1GFppgkRHL9kaELCbyksJtPX"

# Links attached to trade notifications.
DEXSCREENER_URL = "https://dexscreener.com/solana/{mint}?maker={owner}"
RUGCHECK_URL = "https://rugcheck.xyz/tokens/{mint}"
SOLSCAN_TX_URL = "https://solscan.io/tx/{signature}"

__all__ = [
    "LAMPORTS_PER_SOL",
    "WSOL_MINT",
    "RAYDIUM_AMM_V4_PROGRAM_ID",
    "OPENBOOK_PROGRAM_ID",
    "DEXSCREENER_URL",
    "RUGCHECK_URL",
    "SOLSCAN_TX_URL",
]
