import secrets
import string
from decimal import Decimal
from typing import Container, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from loguru import logger

from errors import ReferralCodeGenerationError, ReferralRegistrationError
from models import Account, Commission, ReferralNetworkNode
from money import ZERO
from settings import ReferralSettings, get_settings


def _member_id(member: Union[Account, str]) -> str:
    return member.id if isinstance(member, Account) else member


def is_chain_valid(
    candidate_user_id: str,
    chain: Sequence[Union[Account, str]],
    settings: Optional[ReferralSettings] = None,
) -> bool:
    """
    guard before accepting a referral link.
    chain members can be Account snapshots or plain ids.

    false when:
      - the candidate is already somewhere in the chain (self-reference)
      - any id shows up twice (a cycle upstream)
      - the chain is deeper than max_referral_depth
    """
    settings = settings or get_settings()
    ids = [_member_id(m) for m in chain]

    if candidate_user_id in ids:
        logger.debug("Chain rejected: {} already in chain", candidate_user_id)
        return False

    if len(set(ids)) != len(ids):
        logger.debug("Chain rejected: duplicate member in {}", ids)
        return False

    if len(ids) > settings.max_referral_depth:
        logger.debug("Chain rejected: depth {} > {}", len(ids), settings.max_referral_depth)
        return False

    return True


def walk_upline(user_id: str, ref: Mapping[str, Optional[str]]) -> List[str]:
    """
    every ancestor of user_id, nearest first, following ref (child -> parent).
    if the graph loops, the first repeated id is included once and the walk stops,
    so a validator sees the duplicate.
    """
    upline: List[str] = []
    seen = {user_id}
    current = ref.get(user_id)
    while current is not None:
        upline.append(current)
        if current in seen:
            break
        seen.add(current)
        current = ref.get(current)
    return upline


def get_referral_chain(
    user_id: str,
    ref: Mapping[str, Optional[str]],
    accounts: Mapping[str, Account],
    max_depth: Optional[int] = None,
) -> List[Account]:
    """
    account snapshots of user_id's referrers, nearest first, at most max_depth
    (defaults to max_referral_depth) long. the chain ends early at the top of the tree.
    """
    if max_depth is None:
        max_depth = get_settings().max_referral_depth

    chain: List[Account] = []
    for parent_id in walk_upline(user_id, ref)[:max_depth]:
        parent = accounts.get(parent_id)
        if parent is None:
            raise ReferralRegistrationError(f"User {parent_id} not found")
        chain.append(parent)
    return chain


def register_referral(
    child_id: str,
    parent_id: str,
    ref: Dict[str, Optional[str]],
    settings: Optional[ReferralSettings] = None,
) -> List[str]:
    """
    register that `parent_id` referred `child_id`.
    ref: dict mapping child_id -> parent_id

    rules:
      - a child can only have ONE referrer (cannot be overwritten)
      - a user cannot refer themselves
      - the child's new chain [parent, parent's upline...] must pass is_chain_valid
        (no cycles, no deeper than max_referral_depth)

    returns the child's new upline.
    """
    settings = settings or get_settings()

    if ref.get(child_id) is not None:
        raise ReferralRegistrationError(f"User {child_id} already has a referrer ({ref[child_id]}).")

    if child_id == parent_id:
        raise ReferralRegistrationError("User cannot refer themselves.")

    chain = [parent_id] + walk_upline(parent_id, ref)
    if not is_chain_valid(child_id, chain, settings):
        if child_id in chain or len(set(chain)) != len(chain):
            raise ReferralRegistrationError(
                f"Registering {parent_id} as referrer of {child_id} would create a cycle."
            )
        raise ReferralRegistrationError(
            f"Maximum referral depth exceeded: {parent_id} already has "
            f"{len(chain) - 1} upline level(s)."
        )

    ref[child_id] = parent_id
    logger.info("Linked {} under referrer {}", child_id, parent_id)
    return chain


def apply_signup_discount(account: Account, settings: Optional[ReferralSettings] = None) -> Account:
    """referred users start with the default fee discount."""
    settings = settings or get_settings()
    return Account.model_validate(
        {**account.model_dump(), "fee_discount_rate": settings.default_fee_discount_rate}
    )


# ---------
# referral codes
# ---------

REFERRAL_CODE_ALPHABET = string.ascii_uppercase + string.digits
MAX_CODE_ATTEMPTS = 10


def is_valid_referral_code(code: str, settings: Optional[ReferralSettings] = None) -> bool:
    """prefix followed by A-Z0-9 characters, exactly referral_code_length long."""
    settings = settings or get_settings()
    if not isinstance(code, str) or len(code) != settings.referral_code_length:
        return False
    if not code.startswith(settings.referral_code_prefix):
        return False
    return all(ch in REFERRAL_CODE_ALPHABET for ch in code[len(settings.referral_code_prefix):])


def generate_referral_code(taken: Container[str], settings: Optional[ReferralSettings] = None) -> str:
    """
    random code (e.g. NIKA7Q2X) not already in `taken`.
    gives up after MAX_CODE_ATTEMPTS collisions.
    """
    settings = settings or get_settings()
    prefix = settings.referral_code_prefix
    suffix_length = settings.referral_code_length - len(prefix)

    for _ in range(MAX_CODE_ATTEMPTS):
        candidate = prefix + "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(suffix_length))
        if candidate not in taken:
            return candidate

    raise ReferralCodeGenerationError(
        f"Failed to generate a unique referral code after {MAX_CODE_ATTEMPTS} attempts"
    )


def assign_referral_code(
    user_id: str,
    accounts: Dict[str, Account],
    settings: Optional[ReferralSettings] = None,
) -> str:
    """
    the user's referral code, generating and storing one on first use.
    an existing code is returned unchanged.
    """
    account = accounts.get(user_id)
    if account is None:
        raise ReferralRegistrationError(f"User {user_id} not found")

    if account.referral_code:
        return account.referral_code

    taken = {a.referral_code for a in accounts.values() if a.referral_code}
    code = generate_referral_code(taken, settings)
    accounts[user_id] = account.model_copy(update={"referral_code": code})
    logger.info("Assigned referral code {} to {}", code, user_id)
    return code


def find_referrer_by_code(
    code: str,
    accounts: Mapping[str, Account],
    settings: Optional[ReferralSettings] = None,
) -> Account:
    """account owning `code`; malformed or unknown codes are rejected."""
    if not is_valid_referral_code(code, settings):
        raise ReferralRegistrationError(f"Invalid referral code format: {code!r}")

    for account in accounts.values():
        if account.referral_code == code:
            return account

    raise ReferralRegistrationError(f"Referral code {code} not found")


def register_with_referral_code(
    child_id: str,
    referral_code: str,
    ref: Dict[str, Optional[str]],
    accounts: Dict[str, Account],
    settings: Optional[ReferralSettings] = None,
) -> Dict[str, object]:
    """
    link `child_id` under the owner of `referral_code`.

    the link goes through register_referral (one referrer, no self-referral,
    no cycles, depth limit); on success the child's account records its
    referrer and gets the signup discount.

    returns {"child_id", "referrer_id", "referral_code", "chain", "fee_discount_rate"}.
    """
    settings = settings or get_settings()

    child = accounts.get(child_id)
    if child is None:
        raise ReferralRegistrationError(f"User {child_id} not found")

    referrer = find_referrer_by_code(referral_code, accounts, settings)
    chain = register_referral(child_id, referrer.id, ref, settings)

    child = apply_signup_discount(child.model_copy(update={"referrer_id": referrer.id}), settings)
    accounts[child_id] = child

    return {
        "child_id": child_id,
        "referrer_id": referrer.id,
        "referral_code": referral_code,
        "chain": chain,
        "fee_discount_rate": child.fee_discount_rate,
    }


# ---------
# downline
# ---------

def get_referral_network(
    user_id: str,
    ref: Mapping[str, Optional[str]],
    accounts: Mapping[str, Account],
    commissions: Iterable[Commission] = (),
    max_levels: int = 3,
) -> ReferralNetworkNode:
    """
    downline tree rooted at user_id, `max_levels` deep.

    ref maps child_id -> parent_id; children appear in registration order.
    total_commissions on each node is what that user earned in `commissions`.
    """
    children_of: Dict[str, List[str]] = {}
    for child_id, parent_id in ref.items():
        if parent_id is not None:
            children_of.setdefault(parent_id, []).append(child_id)

    earned: Dict[str, Decimal] = {}
    for commission in commissions:
        earned[commission.earner_id] = earned.get(commission.earner_id, ZERO) + commission.amount

    visited = set()

    def build(member_id: str, level: int) -> ReferralNetworkNode:
        visited.add(member_id)
        account = accounts.get(member_id)
        if account is None:
            raise ReferralRegistrationError(f"User {member_id} not found")

        children = []
        if level < max_levels:
            for child_id in children_of.get(member_id, []):
                # a looped graph must not recurse forever
                if child_id not in visited:
                    children.append(build(child_id, level + 1))

        return ReferralNetworkNode(
            user_id=member_id,
            email=account.email,
            username=account.username,
            level=level,
            total_trade_volume=account.total_trade_volume,
            total_commissions=earned.get(member_id, ZERO),
            children=children,
        )

    return build(user_id, 0)
