from decimal import Decimal

import pytest
from pydantic import ValidationError

import referral_engine
from errors import ReferralCodeGenerationError, ReferralRegistrationError
from models import Account, Commission
from referral_engine import (
    apply_signup_discount,
    assign_referral_code,
    find_referrer_by_code,
    generate_referral_code,
    get_referral_chain,
    get_referral_network,
    is_chain_valid,
    is_valid_referral_code,
    register_referral,
    register_with_referral_code,
    walk_upline,
)
from settings import ReferralSettings

SETTINGS = ReferralSettings(_env_file=None)


def _accounts(*ids):
    return {user_id: Account(id=user_id) for user_id in ids}


# ---------
# chain validation
# ---------

def test_candidate_in_chain_is_invalid():
    assert is_chain_valid("A", ["B", "A"], SETTINGS) is False
    assert is_chain_valid("A", ["A"], SETTINGS) is False


def test_chain_longer_than_max_depth_is_invalid():
    assert is_chain_valid("X", ["A", "B", "C", "D"], SETTINGS) is False


def test_repeated_member_is_invalid():
    assert is_chain_valid("X", ["A", "B", "A"], SETTINGS) is False


def test_valid_chains():
    assert is_chain_valid("X", [], SETTINGS) is True
    assert is_chain_valid("X", ["A"], SETTINGS) is True
    assert is_chain_valid("X", ["A", "B", "C"], SETTINGS) is True


def test_chain_of_accounts_is_accepted():
    chain = [Account(id="A"), Account(id="B")]

    assert is_chain_valid("X", chain, SETTINGS) is True
    assert is_chain_valid("B", chain, SETTINGS) is False


def test_max_depth_comes_from_settings():
    deep = ReferralSettings(_env_file=None, max_referral_depth=5)

    assert is_chain_valid("X", ["A", "B", "C", "D"], deep) is True
    assert is_chain_valid("X", ["A", "B", "C", "D", "E", "F"], deep) is False


# ---------
# referral graph
# ---------

def test_simple_chain_lineage():
    """
    A -> B -> C -> D
    A referred B, B referred C, C referred D
    """
    ref = {}
    accounts = _accounts("A", "B", "C", "D")

    register_referral("B", "A", ref, SETTINGS)  # A → B
    register_referral("C", "B", ref, SETTINGS)  # B → C
    register_referral("D", "C", ref, SETTINGS)  # C → D

    # D's upline: [C, B, A]
    assert [a.id for a in get_referral_chain("D", ref, accounts, 3)] == ["C", "B", "A"]

    # C's upline stops at the top of the tree
    assert [a.id for a in get_referral_chain("C", ref, accounts, 3)] == ["B", "A"]

    # A has no referrer
    assert get_referral_chain("A", ref, accounts, 3) == []


def test_referral_chain_is_capped_at_max_depth():
    ref = {"B": "A", "C": "B", "D": "C", "E": "D"}
    accounts = _accounts("A", "B", "C", "D", "E")

    assert [a.id for a in get_referral_chain("E", ref, accounts, 3)] == ["D", "C", "B"]
    assert walk_upline("E", ref) == ["D", "C", "B", "A"]


def test_referral_chain_with_unknown_account_raises():
    with pytest.raises(ReferralRegistrationError, match="ghost"):
        get_referral_chain("B", {"B": "ghost"}, _accounts("B"), 3)


def test_walk_upline_stops_on_loop():
    ref = {"A": "B", "B": "C", "C": "B"}
    upline = walk_upline("A", ref)

    assert upline == ["B", "C", "B"]
    assert is_chain_valid("A", upline, SETTINGS) is False


def test_register_referral_cannot_overwrite_existing_parent():
    """
    a child can only have ONE referrer.
    trying to re-attach them under someone else should raise.
    """
    ref = {}

    register_referral("B", "A", ref, SETTINGS)  # A → B

    with pytest.raises(ReferralRegistrationError):
        register_referral("B", "C", ref, SETTINGS)  # attempt B → C (should fail)

    # still the original parent
    assert ref["B"] == "A"


def test_register_referral_rejects_self_referral():
    ref = {}
    with pytest.raises(ReferralRegistrationError):
        register_referral("A", "A", ref, SETTINGS)
    assert ref == {}


def test_register_referral_prevents_cycles():
    """
    A -> B -> C
    trying to make A a child of C (C -> A) would create a cycle:
    A → B → C → A
    this must be rejected.
    """
    ref = {}

    register_referral("B", "A", ref, SETTINGS)  # A → B
    register_referral("C", "B", ref, SETTINGS)  # B → C

    with pytest.raises(ReferralRegistrationError, match="cycle"):
        register_referral("A", "C", ref, SETTINGS)

    assert ref["B"] == "A"
    assert ref["C"] == "B"
    assert "A" not in ref  # A still has no parent


def test_register_referral_enforces_max_depth():
    """
    D already sits three levels deep (C, B, A above it),
    so nobody can be registered under D.
    """
    ref = {"B": "A", "C": "B", "D": "C"}

    with pytest.raises(ReferralRegistrationError, match="depth"):
        register_referral("E", "D", ref, SETTINGS)

    assert "E" not in ref
    assert register_referral("E", "C", ref, SETTINGS) == ["C", "B", "A"]


def test_apply_signup_discount():
    account = apply_signup_discount(Account(id="new"), SETTINGS)

    assert account.fee_discount_rate == Decimal("0.10")
    assert account.id == "new"


def test_apply_signup_discount_validates_the_result():
    """
    settings built without validation can carry an impossible discount;
    the account it produces must still be rejected.
    """
    broken = ReferralSettings.model_construct(default_fee_discount_rate=Decimal("1.5"))

    with pytest.raises(ValidationError, match="fee_discount_rate"):
        apply_signup_discount(Account(id="new"), broken)


# ---------
# referral codes
# ---------

@pytest.mark.parametrize("code", ["NIKAADMN", "NIKA1USR", "NIKA0000"])
def test_valid_referral_codes(code):
    assert is_valid_referral_code(code, SETTINGS) is True


@pytest.mark.parametrize("code", ["", "NIKA", "NIKAabcd", "NIKA12345", "ABCD1234", "NIKA-12_", None])
def test_invalid_referral_codes(code):
    assert is_valid_referral_code(code, SETTINGS) is False


def test_generated_codes_are_valid_and_unused():
    taken = set()
    for _ in range(50):
        code = generate_referral_code(taken, SETTINGS)
        assert is_valid_referral_code(code, SETTINGS)
        assert code not in taken
        taken.add(code)


def test_generation_gives_up_after_repeated_collisions(monkeypatch):
    monkeypatch.setattr(referral_engine.secrets, "choice", lambda alphabet: "Q")

    assert generate_referral_code(set(), SETTINGS) == "NIKAQQQQ"
    with pytest.raises(ReferralCodeGenerationError):
        generate_referral_code({"NIKAQQQQ"}, SETTINGS)


def test_assign_referral_code_is_stable():
    accounts = {"A": Account(id="A"), "B": Account(id="B", referral_code="NIKAB001")}

    code = assign_referral_code("A", accounts, SETTINGS)
    assert is_valid_referral_code(code, SETTINGS)
    assert accounts["A"].referral_code == code
    assert assign_referral_code("A", accounts, SETTINGS) == code

    # an existing code is never replaced
    assert assign_referral_code("B", accounts, SETTINGS) == "NIKAB001"

    with pytest.raises(ReferralRegistrationError):
        assign_referral_code("ghost", accounts, SETTINGS)


def test_find_referrer_by_code():
    accounts = {"A": Account(id="A", referral_code="NIKAKOL1")}

    assert find_referrer_by_code("NIKAKOL1", accounts, SETTINGS).id == "A"

    with pytest.raises(ReferralRegistrationError, match="not found"):
        find_referrer_by_code("NIKAKOL2", accounts, SETTINGS)

    with pytest.raises(ReferralRegistrationError, match="format"):
        find_referrer_by_code("kol1", accounts, SETTINGS)


def test_register_with_referral_code_links_and_discounts():
    accounts = {"A": Account(id="A", referral_code="NIKAAAAA"), "B": Account(id="B")}
    ref = {}

    result = register_with_referral_code("B", "NIKAAAAA", ref, accounts, SETTINGS)

    assert result["referrer_id"] == "A"
    assert result["chain"] == ["A"]
    assert result["fee_discount_rate"] == Decimal("0.10")
    assert ref == {"B": "A"}
    assert accounts["B"].referrer_id == "A"
    assert accounts["B"].fee_discount_rate == Decimal("0.10")


def test_register_with_own_code_is_rejected():
    accounts = {"A": Account(id="A", referral_code="NIKAAAAA")}
    ref = {}

    with pytest.raises(ReferralRegistrationError, match="themselves"):
        register_with_referral_code("A", "NIKAAAAA", ref, accounts, SETTINGS)

    assert ref == {}
    assert accounts["A"].fee_discount_rate == 0


def test_register_with_code_for_unknown_user_is_rejected():
    accounts = {"A": Account(id="A", referral_code="NIKAAAAA")}

    with pytest.raises(ReferralRegistrationError, match="ghost"):
        register_with_referral_code("ghost", "NIKAAAAA", {}, accounts, SETTINGS)


# ---------
# downline
# ---------

def _commission(earner_id, amount):
    return Commission(
        amount=amount,
        commission_level=1,
        rate="0.30",
        earner_id=earner_id,
        source_user_id="someone",
    )


def test_referral_network_tree():
    """
    A
    ├── B
    │   └── D
    │       └── E
    │           └── F   (fourth level, not shown)
    └── C
    """
    ref = {"B": "A", "C": "A", "D": "B", "E": "D", "F": "E"}
    accounts = _accounts("A", "B", "C", "D", "E", "F")
    accounts["B"] = Account(id="B", total_trade_volume="5000")

    tree = get_referral_network("A", ref, accounts, [_commission("A", "3"), _commission("A", "1.5")])

    assert tree.user_id == "A"
    assert tree.level == 0
    assert tree.total_commissions == Decimal("4.5")
    assert [c.user_id for c in tree.children] == ["B", "C"]

    b = tree.children[0]
    assert b.level == 1
    assert b.total_trade_volume == Decimal("5000")
    assert [c.user_id for c in b.children] == ["D"]

    e = b.children[0].children[0]
    assert e.level == 3
    assert e.children == []
    assert tree.network_size == 4


def test_referral_network_respects_max_levels():
    ref = {"B": "A", "C": "B"}
    tree = get_referral_network("A", ref, _accounts("A", "B", "C"), max_levels=1)

    assert [c.user_id for c in tree.children] == ["B"]
    assert tree.children[0].children == []


def test_referral_network_survives_a_loop():
    ref = {"A": "B", "B": "A"}
    tree = get_referral_network("A", ref, _accounts("A", "B"))

    assert [c.user_id for c in tree.children] == ["B"]
    assert tree.children[0].children == []


def test_referral_network_unknown_user():
    with pytest.raises(ReferralRegistrationError):
        get_referral_network("ghost", {}, {})
