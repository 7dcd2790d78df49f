"""
Vault Keeper - Off-chain keeper for a transfer-taxed Token-2022 token

This package drives the on-chain vault of a token that withholds a fee on
every transfer: it steps the transfer fee down after launch, keeps liquidity
pools out of the fee and reward lists, follows the weekly reward asset
announced on social media, and harvests the withheld fees, swaps them into
the reward asset and pays 80% to eligible holders and 20% to the project.
"""

__version__ = "0.1.0"
__author__ = "Vault Keeper Team"
__license__ = "MIT"
