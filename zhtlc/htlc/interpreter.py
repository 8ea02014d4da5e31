"""
Minimal script interpreter.

Covers the opcodes used by P2PKH, P2SH and the HTLC redeem script so the
signer can prove an unlocking script would be accepted before handing it out.
"""

import logging
from typing import List

from ecdsa import BadSignatureError, BadDigestError
from ecdsa.der import UnexpectedDER
from ecdsa.util import sigdecode_der

from ..core import LOCKTIME_THRESHOLD, SEQUENCE_FINAL
from ..errors import InvalidParameter
from .keys import load_pubkey
from .script import (
    OP_0, OP_1NEGATE, OP_1, OP_16, OP_NOP, OP_IF, OP_NOTIF, OP_ELSE, OP_ENDIF,
    OP_VERIFY, OP_DROP, OP_DUP, OP_EQUAL, OP_EQUALVERIFY, OP_SHA256,
    OP_HASH160, OP_CHECKSIG, OP_CHECKLOCKTIMEVERIFY,
    tokenize, sha256, hash160, encode_script_num, decode_script_num,
)
from .tx import Transaction, SIGHASH_ALL

log = logging.getLogger(__name__)


class ScriptError(Exception):
    """Script evaluation failed."""
    pass


def cast_to_bool(value: bytes) -> bool:
    for i, b in enumerate(value):
        if b != 0:
            # Negative zero is false
            return not (i == len(value) - 1 and b == 0x80)
    return False


def is_push_only(script: bytes) -> bool:
    try:
        tokens = tokenize(script)
    except InvalidParameter:
        return False
    return all(isinstance(t, bytes) or t == OP_0 or t == OP_1NEGATE or OP_1 <= t <= OP_16
               for t in tokens)


def is_p2sh(script_pubkey: bytes) -> bool:
    return (len(script_pubkey) == 23 and script_pubkey[0] == OP_HASH160
            and script_pubkey[1] == 20 and script_pubkey[22] == OP_EQUAL)


def check_signature(sig: bytes, pubkey: bytes, tx: Transaction,
                    input_index: int, script_code: bytes) -> bool:
    if not sig:
        return False
    hash_type = sig[-1]
    if hash_type != SIGHASH_ALL:
        return False
    try:
        vk = load_pubkey(pubkey.hex())
    except InvalidParameter:
        return False
    digest = tx.signature_hash(input_index, script_code, hash_type)
    try:
        return vk.verify_digest(sig[:-1], digest, sigdecode=sigdecode_der)
    except (BadSignatureError, BadDigestError, UnexpectedDER):
        return False


def check_locktime(locktime: int, tx: Transaction, input_index: int) -> bool:
    """CHECKLOCKTIMEVERIFY rules for a stack operand."""
    if locktime < 0:
        return False
    # Height vs timestamp must agree
    if (locktime < LOCKTIME_THRESHOLD) != (tx.locktime < LOCKTIME_THRESHOLD):
        return False
    if locktime > tx.locktime:
        return False
    # A final sequence disables nLockTime
    return tx.inputs[input_index].sequence != SEQUENCE_FINAL


def eval_script(script: bytes, stack: List[bytes], tx: Transaction,
                input_index: int) -> List[bytes]:
    """
    Run a script against a stack.

    Returns:
        The resulting stack (the input list is mutated)

    Raises:
        ScriptError: on any failure
    """
    try:
        tokens = tokenize(script)
    except InvalidParameter as e:
        raise ScriptError(str(e))

    def pop() -> bytes:
        if not stack:
            raise ScriptError("Stack underflow")
        return stack.pop()

    exec_stack: List[bool] = []
    for token in tokens:
        executing = all(exec_stack)

        if isinstance(token, bytes):
            if executing:
                stack.append(token)
            continue

        op = token
        if op in (OP_IF, OP_NOTIF):
            value = False
            if executing:
                value = cast_to_bool(pop())
                if op == OP_NOTIF:
                    value = not value
            exec_stack.append(value)
            continue
        if op == OP_ELSE:
            if not exec_stack:
                raise ScriptError("OP_ELSE without OP_IF")
            exec_stack[-1] = not exec_stack[-1]
            continue
        if op == OP_ENDIF:
            if not exec_stack:
                raise ScriptError("OP_ENDIF without OP_IF")
            exec_stack.pop()
            continue
        if not executing:
            continue

        if op == OP_0:
            stack.append(b"")
        elif op == OP_1NEGATE:
            stack.append(encode_script_num(-1))
        elif OP_1 <= op <= OP_16:
            stack.append(encode_script_num(op - 0x50))
        elif op == OP_NOP:
            pass
        elif op == OP_VERIFY:
            if not cast_to_bool(pop()):
                raise ScriptError("OP_VERIFY failed")
        elif op == OP_DROP:
            pop()
        elif op == OP_DUP:
            top = pop()
            stack.extend([top, top])
        elif op in (OP_EQUAL, OP_EQUALVERIFY):
            b, a = pop(), pop()
            if op == OP_EQUALVERIFY:
                if a != b:
                    raise ScriptError("OP_EQUALVERIFY failed")
            else:
                stack.append(b"\x01" if a == b else b"")
        elif op == OP_SHA256:
            stack.append(sha256(pop()))
        elif op == OP_HASH160:
            stack.append(hash160(pop()))
        elif op == OP_CHECKSIG:
            pubkey, sig = pop(), pop()
            ok = check_signature(sig, pubkey, tx, input_index, script)
            stack.append(b"\x01" if ok else b"")
        elif op == OP_CHECKLOCKTIMEVERIFY:
            if not stack:
                raise ScriptError("Stack underflow")
            if len(stack[-1]) > 5:
                raise ScriptError("Locktime operand too large")
            if not check_locktime(decode_script_num(stack[-1]), tx, input_index):
                raise ScriptError("Locktime requirement not satisfied")
        else:
            raise ScriptError(f"Unsupported opcode {op:#04x}")

    if exec_stack:
        raise ScriptError("Unbalanced conditional")
    return stack


def verify_input(script_sig: bytes, script_pubkey: bytes, tx: Transaction,
                 input_index: int):
    """
    Evaluate scriptSig, then scriptPubKey, then (for P2SH) the redeem script.

    Raises:
        ScriptError: the input would be rejected
    """
    if not is_push_only(script_sig):
        raise ScriptError("scriptSig is not push-only")

    stack = eval_script(script_sig, [], tx, input_index)
    p2sh_stack = list(stack)

    stack = eval_script(script_pubkey, stack, tx, input_index)
    if not stack or not cast_to_bool(stack[-1]):
        raise ScriptError("scriptPubKey evaluated to false")

    if is_p2sh(script_pubkey):
        if not p2sh_stack:
            raise ScriptError("Missing redeem script")
        redeem_script = p2sh_stack.pop()
        stack = eval_script(redeem_script, p2sh_stack, tx, input_index)
        if not stack or not cast_to_bool(stack[-1]):
            raise ScriptError("Redeem script evaluated to false")
