"""
UTXO selection.

Largest-first greedy selection over confirmed, unclaimed outputs.
Ordering is (amount desc, txid, vout) so identical inputs always yield
identical selections.
"""

from dataclasses import dataclass
from typing import List, Iterable

from ..core import UTXO, DUST_THRESHOLD
from ..errors import InsufficientFunds


@dataclass
class Selection:
    utxos: List[UTXO]
    total: int          # zatoshis
    fee: int            # zatoshis, includes any folded dust change
    change: int         # zatoshis, 0 when folded


def select_utxos(candidates: Iterable[UTXO], target: int, fee: int,
                 min_confirmations: int = 1, dust_threshold: int = DUST_THRESHOLD) -> Selection:
    """
    Pick inputs covering target + fee.

    Args:
        candidates: UTXO pool
        target: amount to pay (zatoshis)
        fee: fixed network fee (zatoshis)
        min_confirmations: eligibility floor
        dust_threshold: change below this is added to the fee

    Raises:
        InsufficientFunds: eligible outputs cannot cover target + fee
    """
    eligible = [u for u in candidates
                if not u.spent and u.spent_in_tx is None and u.confirmations >= min_confirmations]
    eligible.sort(key=lambda u: (-u.zatoshis, u.txid, u.vout))

    required = target + fee
    chosen = []
    total = 0
    for utxo in eligible:
        if total >= required:
            break
        chosen.append(utxo)
        total += utxo.zatoshis

    if total < required:
        raise InsufficientFunds(required=required, available=total)

    change = total - required
    if change < dust_threshold:
        return Selection(utxos=chosen, total=total, fee=fee + change, change=0)
    return Selection(utxos=chosen, total=total, fee=fee, change=change)
