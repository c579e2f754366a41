"""
Conformance Test Suite

Property-based tests of the bridge's settlement guarantees.

The tests are organized by invariant:
1. conservation.py - CreateETF ratios, offchain + onchain totals, swap supply
2. all_or_nothing.py - CreateETF mutates everything or nothing
3. inverse_law.py - Redeem undoes Tokenize
4. no_negative_balances.py - Arbitrary operation sequences stay non-negative
5. ordering.py - The registry moves only after ledger confirmation
6. mutual_exclusion.py - Operations on one owner never interleave

These tests use hypothesis for property-based testing.
"""
