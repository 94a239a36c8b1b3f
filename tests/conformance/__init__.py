"""
Conformance Test Suite

This suite defines the NORMATIVE behavior of the match trading core.

The tests are organized by invariant:
1. test_conservation.py - Every unit totals zero across all wallets
2. test_solvency.py - Forced payment and all-or-nothing bankruptcy
3. test_loss_cap.py - Closing never costs the owner more than the stake
4. test_liquidation.py - Liquidation bounds and exact stake forfeiture
5. test_merging.py - Merged stake and stake-weighted entry
6. test_idempotency.py - Duplicate execution handling

These tests use hypothesis for property-based testing.
"""
