"""
test_engine.py
---------------
Test suite for the learned categorization engine.

Run from the project root:
    python -m pytest tests/test_engine.py -v

Tests are organized by layer:
    - Config & Descriptor Dictionary
    - Normalizer
    - Store & Cache
    - Learned Rule Store
    - Categorization Engine
    - Feedback Pipeline
    - History Suggester
"""

import sys
import os
import pytest
import pandas as pd
from datetime import datetime, timedelta

# Ensure the project root is on the path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from config.config_loader import load_config, get_learning_config, reset_config
from core.cache import ANY, TTLCache
from core.categorization_engine import CategorizationEngine
from core.descriptor_dictionary import DescriptorDictionary
from core.feedback import FeedbackPipeline
from core.history_suggester import HistorySuggester
from core.models import (
    CategorizationSuggestion,
    FeedbackAction,
    FeedbackRequest,
    FingerprintType,
    LearnedRule,
    LearningScope,
    PredictionSource,
    RequestContext,
)
from core.normalizer import (
    description_key,
    descriptions_similar,
    detect_entities,
    detect_pix_info,
    extract_merchant_canon,
    extract_merchant_name,
    generate_fingerprints,
    generate_matching_keys,
    has_strong_fingerprint,
    is_bank_fee,
    normalize_descriptor,
)
from core.rule_store import LearnedRuleStore
from core.store import DuplicateKeyError, SQLiteStore, StoreError


NOW = datetime(2025, 12, 15, 12, 0, 0)
ALICE = RequestContext(user_id="user-alice", family_id="fam-1")
BOB = RequestContext(user_id="user-bob", family_id="fam-1")
CAROL = RequestContext(user_id="user-carol", family_id="fam-2")


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def reset_config_cache():
    """Clears config cache before each test for isolation."""
    reset_config()
    yield
    reset_config()


class FailingStore(SQLiteStore):
    """Store whose reads always fail, to exercise degradation paths."""

    def select(self, *args, **kwargs):
        raise StoreError("connection refused")


class ReadOnlyStore(SQLiteStore):
    """Store that rejects every write."""

    def insert(self, table, row):
        raise StoreError("read-only replica")

    def upsert(self, table, row, on_conflict, update=None):
        raise StoreError("read-only replica")


class RacingStore(SQLiteStore):
    """Store whose first upsert loses a race against a concurrent insert."""

    def __init__(self):
        super().__init__()
        self.upsert_calls = 0

    def upsert(self, table, row, on_conflict, update=None):
        self.upsert_calls += 1
        if self.upsert_calls == 1:
            raise DuplicateKeyError("duplicate key value violates unique constraint")
        return super().upsert(table, row, on_conflict, update)


def _make_stack(store=None, cache=None):
    """Helper: wires store, rule store, engine and feedback pipeline together."""
    store = store or SQLiteStore()
    cache = TTLCache() if cache is None else cache
    rules = LearnedRuleStore(store, cache, clock=lambda: NOW)
    engine = CategorizationEngine(rules, DescriptorDictionary(), cache)
    feedback = FeedbackPipeline(rules, cache)
    return store, rules, engine, feedback


def _make_feedback(
    descriptor: str = "IFOOD *RESTAURANTE",
    category: str = "lazer",
    scope: str = "user",
    apply_to_future: bool = True,
    predicted: str | None = "alimentacao",
) -> FeedbackRequest:
    return FeedbackRequest(
        raw_descriptor=descriptor,
        user_category_id=category,
        apply_scope=scope,
        apply_to_future=apply_to_future,
        predicted_category_id=predicted,
        predicted_source=PredictionSource.REGEX if predicted else None,
        predicted_confidence=0.95 if predicted else None,
    )


def _make_history_txns(rows: list[tuple[str, str, int]], family_id: str = "fam-1") -> list[dict]:
    """Helper: (description, category_id, days_ago) tuples as transaction rows."""
    return [
        {
            "family_id": family_id,
            "user_id": "user-alice",
            "description": description,
            "category_id": category,
            "classification": "expense",
            "type": "expense",
            "amount": 25.0,
            "date": (NOW - timedelta(days=days_ago)).date(),
            "created_at": NOW - timedelta(days=days_ago),
        }
        for description, category, days_ago in rows
    ]


# =============================================================================
# CONFIG & DICTIONARY TESTS
# =============================================================================

class TestConfig:
    def test_config_loads_successfully(self):
        config = load_config()
        for section in ("normalizer", "descriptor_dictionary", "learning",
                        "history_suggestion", "recurring_detection", "cache"):
            assert section in config

    def test_learning_defaults(self):
        learning = get_learning_config()
        assert learning["seed_confidence"] == 0.85
        assert learning["conflict_policy"] == "keep_and_flag"
        assert learning["scope_priority"] == ["user", "family", "global"]

    def test_missing_section_raises(self):
        from config.config_loader import _get_section
        with pytest.raises(KeyError, match="Available"):
            _get_section("not_a_section")

    def test_unknown_conflict_policy_raises(self):
        load_config()["learning"]["conflict_policy"] = "coin_flip"
        with pytest.raises(ValueError, match="conflict_policy"):
            LearnedRuleStore(SQLiteStore())


class TestDescriptorDictionary:
    def test_dictionary_loads(self):
        dictionary = DescriptorDictionary()
        assert len(dictionary) > 0
        assert "alimentacao" in dictionary.get_all_categories()

    def test_known_lookup_succeeds(self):
        match = DescriptorDictionary().lookup("IFOOD *RESTAURANTE")
        assert match is not None
        assert match.category_id == "alimentacao"
        assert match.subcategory_id == "alimentacao-delivery"
        assert match.confidence == 0.95

    def test_lookup_is_accent_and_case_insensitive(self):
        dictionary = DescriptorDictionary()
        assert dictionary.get_category("pão de açúcar loja 12") == "alimentacao"

    def test_keywords_match_whole_words_only(self):
        # "TARDE" must not trigger the TAR (bank fee) keyword
        assert DescriptorDictionary().get_category("CAFE DA TARDE LTDA XPTO") is None

    def test_unknown_lookup_returns_none(self):
        assert DescriptorDictionary().lookup("QWERTY ZXCVB") is None

    def test_uber_is_not_in_dictionary(self):
        assert DescriptorDictionary().lookup("UBER *TRIP SAO PAULO") is None

    def test_first_match_wins(self):
        entries = [
            {"patterns": ["NETFLIX"], "category_id": "first", "confidence": 0.9},
            {"patterns": ["NETFLIX"], "category_id": "second", "confidence": 0.9},
        ]
        assert DescriptorDictionary(entries).get_category("NETFLIX.COM") == "first"

    def test_invalid_confidence_raises(self):
        with pytest.raises(ValueError, match="outside"):
            DescriptorDictionary([{"patterns": ["X"], "category_id": "c", "confidence": 1.5}])

    def test_entry_without_patterns_raises(self):
        with pytest.raises(ValueError, match="no patterns"):
            DescriptorDictionary([{"patterns": [], "category_id": "c", "confidence": 0.5}])


# =============================================================================
# NORMALIZER TESTS
# =============================================================================

class TestNormalizer:
    @pytest.mark.parametrize("descriptor", [
        "  Pão de Açúcar  ",
        "PAG*IFOOD *RESTAURANTE SAO PAULO 12/03",
        "NETFLIX.COM",
        "***",
        "",
        "Débito Automático - CEMIG 0001234567",
    ])
    def test_normalize_is_idempotent(self, descriptor):
        once = normalize_descriptor(descriptor)
        assert normalize_descriptor(once) == once

    def test_normalize_strips_accents_and_punctuation(self):
        assert normalize_descriptor("  Pão de Açúcar!! ") == "pao de acucar"

    def test_normalize_handles_none(self):
        assert normalize_descriptor(None) == ""

    def test_description_key_removes_prefix_noise_and_dates(self):
        assert description_key("PIX ENVIADO JOAO SILVA 12/03/2024") == "pix_enviado_joao_silva"

    def test_description_key_sorts_trailing_tokens(self):
        assert (
            description_key("Loja Alfa Beta Zeta Gama")
            == description_key("Loja Alfa Beta Gama Zeta")
            == "loja_alfa_beta_gama_zeta"
        )

    def test_description_key_drops_stopwords(self):
        assert description_key("PADARIA DO BAIRRO LTDA") == "padaria_bairro"

    def test_strong_fingerprint_for_curated_merchant(self):
        fp = generate_fingerprints("IFOOD *RESTAURANTE")
        assert fp.strong == "F:IFOOD"
        assert fp.weak == "W:ifood_restaurante"
        assert fp.merchant_canon == "IFOOD"

    def test_gateway_and_location_removed(self):
        fp = generate_fingerprints("PAG*NETFLIX.COM SP")
        assert fp.strong == "F:NETFLIX"
        assert fp.weak == "W:netflix_com"

    def test_compound_merchant_from_adjacent_tokens(self):
        assert generate_fingerprints("MERCADO LIVRE COMPRA").strong == "F:MERCADOLIVRE"

    def test_same_merchant_shares_strong_fingerprint(self):
        a = generate_fingerprints("IFOOD *RESTAURANTE")
        b = generate_fingerprints("IFOOD *RESTAURANTE XYZ")
        assert a.strong == b.strong
        assert a.weak != b.weak

    def test_unknown_merchant_only_weak(self):
        fp = generate_fingerprints("PADARIA CENTRAL")
        assert fp.strong is None
        assert fp.weak == "W:padaria_central"
        assert fp.preferred() == ("W:padaria_central", FingerprintType.WEAK)

    def test_empty_descriptor_has_no_fingerprint(self):
        fp = generate_fingerprints("")
        assert fp.is_empty
        assert fp.preferred() == (None, None)

    def test_descriptions_similar(self):
        assert descriptions_similar("PADARIA CENTRAL 12/03", "PADARIA CENTRAL 15/04")
        assert not descriptions_similar("PADARIA CENTRAL", "POSTO SHELL")

    def test_extract_merchant_name(self):
        assert extract_merchant_name("PIX ENVIADO JOAO DA SILVA 12/03") == "ENVIADO JOAO SILVA"

    def test_strong_fingerprint_helpers(self):
        assert has_strong_fingerprint("IFOOD *RESTAURANTE")
        assert not has_strong_fingerprint("PADARIA CENTRAL")
        assert extract_merchant_canon("MERCADO LIVRE COMPRA") == "MERCADOLIVRE"
        assert extract_merchant_canon("PADARIA CENTRAL") is None


class TestDetectedEntities:
    def test_intermediary_platform(self):
        entities = detect_entities("PAGSEGURO *LOJA XPTO")
        assert entities.platform == "PAGSEGURO"
        assert entities.is_intermediary

    def test_direct_platform_and_domain(self):
        entities = generate_fingerprints("PAG*NETFLIX.COM SP").entities
        assert entities.platform == "NETFLIX"
        assert not entities.is_intermediary
        assert entities.domain == "netflix.com"

    def test_uber_eats_is_not_uber(self):
        assert detect_entities("UBER EATS PEDIDO").platform == "UBER_EATS"
        assert detect_entities("UBER *TRIP SAO PAULO").platform == "UBER"

    def test_cnpj_wins_over_cpf(self):
        entities = detect_entities("PAGAMENTO 12.345.678/0001-90")
        assert entities.cnpj == "12345678000190"
        assert entities.cpf is None
        assert detect_entities("TRANSF 123.456.789-09").cpf == "12345678909"

    @pytest.mark.parametrize("descriptor, key", [
        ("PIX ENVIADO joao@gmail.com", "joao@gmail.com"),
        ("PIX TRANSF 11987654321", "11987654321"),
        ("PIX RECEBIDO 123E4567-E89B-12D3-A456-426614174000", "123e4567-e89b-12d3-a456-426614174000"),
        ("PIX ENVIADO JOAO SILVA", None),
    ])
    def test_pix_key_extraction(self, descriptor, key):
        assert detect_pix_info(descriptor) == (True, key)

    def test_not_pix(self):
        assert detect_pix_info("COMPRA PIXEL STORE") == (False, None)
        assert not detect_entities("NETFLIX.COM").is_pix

    @pytest.mark.parametrize("descriptor, expected", [
        ("TARIFA PACOTE SERVICOS", True),
        ("IOF COMPRA INTERNACIONAL", True),
        ("Manutenção de conta", True),
        ("TED ENVIADO JOAO", False),
        ("TAXI AEROPORTO", False),
        ("", False),
    ])
    def test_bank_fee(self, descriptor, expected):
        assert is_bank_fee(descriptor) is expected

    def test_matching_keys(self):
        assert generate_matching_keys("IFOOD *RESTAURANTE XYZ") == [
            "ifoodrestaurantexyz", "ifood", "ifoodrestaurante",
        ]
        assert generate_matching_keys("") == []

    def test_entities_do_not_change_the_suggestion(self):
        _, _, engine, _ = _make_stack()
        suggestion = engine.suggest("PAGSEGURO *LOJA XPTO", ALICE)
        assert suggestion.source == PredictionSource.FALLBACK


# =============================================================================
# STORE & CACHE TESTS
# =============================================================================

class TestSQLiteStore:
    def _rule_row(self, **overrides) -> dict:
        row = {
            "scope_type": "user", "user_id": "u1", "family_id": None,
            "fingerprint": "F:IFOOD", "fingerprint_type": "strong",
            "category_id": "lazer", "examples_count": 1, "conflict_count": 0,
            "is_archived": False,
        }
        row.update(overrides)
        return row

    def test_insert_assigns_id(self):
        store = SQLiteStore()
        row = store.insert("learned_merchant_rules", self._rule_row())
        assert row["id"]
        assert row["created_at"] is not None
        assert store.count("learned_merchant_rules") == 1

    def test_duplicate_active_rule_rejected(self):
        store = SQLiteStore()
        store.insert("learned_merchant_rules", self._rule_row())
        with pytest.raises(DuplicateKeyError):
            store.insert("learned_merchant_rules", self._rule_row(category_id="casa"))

    def test_archived_rule_does_not_block_new_rule(self):
        store = SQLiteStore()
        store.insert("learned_merchant_rules", self._rule_row(is_archived=True))
        store.insert("learned_merchant_rules", self._rule_row())
        assert store.count("learned_merchant_rules") == 2

    def test_select_filters_and_orders(self):
        store = SQLiteStore()
        store.insert("learned_merchant_rules", self._rule_row(fingerprint="F:A", examples_count=3))
        store.insert("learned_merchant_rules", self._rule_row(fingerprint="F:B", examples_count=5))
        store.insert("learned_merchant_rules", self._rule_row(fingerprint="F:C", examples_count=1))

        df = store.select(
            "learned_merchant_rules",
            where={"fingerprint": ["F:A", "F:B"]},
            order_by="examples_count",
            descending=True,
        )
        assert isinstance(df, pd.DataFrame)
        assert df["fingerprint"].tolist() == ["F:B", "F:A"]

    def test_upsert_inserts_then_updates(self):
        store = SQLiteStore()
        key = ("scope_type", "user_id", "family_id", "fingerprint")

        row, inserted = store.upsert("learned_merchant_rules", self._rule_row(), key)
        assert inserted
        row, inserted = store.upsert(
            "learned_merchant_rules", self._rule_row(), key,
            update=lambda existing: {"examples_count": existing["examples_count"] + 1},
        )
        assert not inserted
        assert row["examples_count"] == 2
        assert store.count("learned_merchant_rules") == 1

    def test_unknown_table_raises(self):
        with pytest.raises(StoreError, match="Unknown table"):
            SQLiteStore().select("nope")

    def test_unknown_column_raises(self):
        with pytest.raises(StoreError, match="Unknown columns"):
            SQLiteStore().insert("transactions", {"colour": "blue"})

    def test_non_date_value_raises_store_error(self):
        with pytest.raises(StoreError):
            SQLiteStore().insert("transactions", {"family_id": "fam-1", "date": "not-a-date"})

    def test_user_rule_without_family_still_unique(self):
        # NULL family must not let two active twins in
        store = SQLiteStore()
        store.insert("learned_merchant_rules", self._rule_row(family_id=None))
        with pytest.raises(DuplicateKeyError):
            store.insert("learned_merchant_rules", self._rule_row(family_id=None, category_id="casa"))

    def test_archiving_frees_the_key(self):
        store = SQLiteStore()
        row = store.insert("learned_merchant_rules", self._rule_row())
        assert store.update("learned_merchant_rules", {"id": row["id"]}, {"is_archived": True}) == 1
        store.insert("learned_merchant_rules", self._rule_row(category_id="casa"))

        active = store.select("learned_merchant_rules", where={"is_archived": False})
        assert active["category_id"].tolist() == ["casa"]

    def test_upsert_ignores_archived_twin(self):
        store = SQLiteStore()
        key = ("scope_type", "user_id", "family_id", "fingerprint")
        store.insert("learned_merchant_rules", self._rule_row(is_archived=True, examples_count=9))

        row, inserted = store.upsert("learned_merchant_rules", self._rule_row(), key)
        assert inserted
        assert row["examples_count"] == 1

    def test_date_range_select(self):
        store = SQLiteStore()
        for days_ago in (0, 10, 40):
            store.insert("transactions", {
                "family_id": "fam-1", "description": f"d{days_ago}",
                "date": (NOW - timedelta(days=days_ago)).date(),
                "created_at": NOW - timedelta(days=days_ago),
            })
        df = store.select("transactions", between={"created_at": (NOW - timedelta(days=30), NOW)})
        assert sorted(df["description"]) == ["d0", "d10"]
        df = store.select("transactions", between={"date": (None, (NOW - timedelta(days=5)).date())})
        assert sorted(df["description"]) == ["d10", "d40"]

    def test_file_backed_store_persists(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'household.db'}"
        SQLiteStore(url).insert("learned_merchant_rules", self._rule_row())
        assert SQLiteStore(url).count("learned_merchant_rules") == 1


class TestTTLCache:
    def test_entries_expire(self):
        now = [0.0]
        cache = TTLCache(default_ttl=10, clock=lambda: now[0])
        cache.set(("suggestion", "fam-1"), "value")
        assert cache.get(("suggestion", "fam-1")) == "value"
        now[0] = 11.0
        assert cache.get(("suggestion", "fam-1")) is None

    def test_prefix_invalidation(self):
        cache = TTLCache(default_ttl=60)
        cache.set(("suggestion", "fam-1", "u1", "a"), 1)
        cache.set(("suggestion", "fam-1", "u2", "b"), 2)
        cache.set(("suggestion", "fam-2", "u3", "c"), 3)

        assert cache.invalidate([("suggestion", "fam-1", "u1")]) == 1
        assert ("suggestion", "fam-1", "u2", "b") in cache
        assert cache.invalidate([("suggestion",)]) == 2
        assert len(cache) == 0

    def test_wildcard_invalidation(self):
        cache = TTLCache(default_ttl=60)
        cache.set(("suggestion", "fam-1", "u1", "a"), 1)
        cache.set(("suggestion", "fam-2", "u1", "a"), 2)
        cache.set(("suggestion", None, "u1", "a"), 3)
        cache.set(("suggestion", "fam-1", "u2", "a"), 4)

        assert cache.invalidate([("suggestion", ANY, "u1")]) == 3
        assert ("suggestion", "fam-1", "u2", "a") in cache

    def test_get_or_compute_caches_none(self):
        calls = []
        cache = TTLCache(default_ttl=60)
        for _ in range(3):
            cache.get_or_compute(("k",), lambda: calls.append(1))
        assert len(calls) == 1


# =============================================================================
# LEARNED RULE STORE TESTS
# =============================================================================

class TestLearnedRuleStore:
    def test_confidence_formula(self):
        rules = LearnedRuleStore(SQLiteStore())
        assert rules.compute_confidence(1, 0) == 0.85
        assert rules.compute_confidence(3, 0) == 0.89
        assert rules.compute_confidence(1, 1) == 0.75
        assert rules.compute_confidence(100, 0) == 0.98
        assert rules.compute_confidence(1, 10) == 0.30

    def test_feedback_creates_rule(self):
        _, rules, _, feedback = _make_stack()
        result = feedback.record_feedback(ALICE, _make_feedback())

        assert result.success and result.learned
        assert result.action == FeedbackAction.CREATED
        assert not result.conflict

        rule = rules.lookup(ALICE.user_id, ALICE.family_id, "F:IFOOD", None)
        assert rule.category_id == "lazer"
        assert rule.scope_type == LearningScope.USER
        assert rule.fingerprint_type == FingerprintType.STRONG
        assert rule.id == result.rule_id

    def test_repeated_feedback_reinforces_single_rule(self):
        store, rules, _, feedback = _make_stack()
        feedback.record_feedback(ALICE, _make_feedback())
        result = feedback.record_feedback(ALICE, _make_feedback())

        assert result.action == FeedbackAction.REINFORCED
        active = store.select("learned_merchant_rules", where={"is_archived": False})
        assert len(active) == 1
        assert active.iloc[0]["examples_count"] == 2
        assert active.iloc[0]["confidence_base"] == pytest.approx(0.87)

    def test_conflict_is_flagged_and_category_kept(self):
        _, rules, _, feedback = _make_stack()
        feedback.record_feedback(ALICE, _make_feedback(category="lazer"))
        result = feedback.record_feedback(ALICE, _make_feedback(category="alimentacao"))

        assert result.success
        assert result.conflict
        assert not result.learned
        assert result.existing_category_id == "lazer"

        rule = rules.lookup(ALICE.user_id, ALICE.family_id, "F:IFOOD", None)
        assert rule.category_id == "lazer"
        assert rule.conflict_count == 1
        assert rule.confidence_base == pytest.approx(0.75)

    def test_conflict_overwrite_policy(self):
        load_config()["learning"]["conflict_policy"] = "overwrite"
        _, rules, _, feedback = _make_stack()
        feedback.record_feedback(ALICE, _make_feedback(category="lazer"))
        feedback.record_feedback(ALICE, _make_feedback(category="lazer"))
        result = feedback.record_feedback(ALICE, _make_feedback(category="alimentacao"))

        assert result.conflict and result.learned
        assert result.action == FeedbackAction.OVERWRITTEN
        assert result.existing_category_id == "lazer"

        rule = rules.lookup(ALICE.user_id, ALICE.family_id, "F:IFOOD", None)
        assert rule.category_id == "alimentacao"
        assert rule.examples_count == 1
        assert rule.conflict_count == 1

    def test_user_rule_beats_family_and_global(self):
        _, rules, _, feedback = _make_stack()
        feedback.record_feedback(BOB, _make_feedback(category="global-cat", scope="global"))
        feedback.record_feedback(BOB, _make_feedback(category="family-cat", scope="family"))
        feedback.record_feedback(ALICE, _make_feedback(category="user-cat", scope="user"))

        assert rules.lookup(ALICE.user_id, "fam-1", "F:IFOOD", None).category_id == "user-cat"
        assert rules.lookup(BOB.user_id, "fam-1", "F:IFOOD", None).category_id == "family-cat"
        assert rules.lookup(CAROL.user_id, "fam-2", "F:IFOOD", None).category_id == "global-cat"

    def test_strong_beats_weak_within_scope(self):
        store, rules, _, _ = _make_stack()
        for fingerprint, fp_type, category in [
            ("W:ifood_restaurante", "weak", "weak-cat"),
            ("F:IFOOD", "strong", "strong-cat"),
        ]:
            store.insert("learned_merchant_rules", {
                "scope_type": "user", "user_id": ALICE.user_id, "family_id": None,
                "fingerprint": fingerprint, "fingerprint_type": fp_type,
                "category_id": category, "confidence_base": 0.85,
                "examples_count": 1, "conflict_count": 0, "is_archived": False,
                "last_used_at": NOW,
            })

        rule = rules.lookup(ALICE.user_id, ALICE.family_id, "F:IFOOD", "W:ifood_restaurante")
        assert rule.category_id == "strong-cat"

    def test_fingerprint_priority_comes_from_config(self):
        load_config()["learning"]["fingerprint_priority"] = ["weak", "strong"]
        store, rules, _, _ = _make_stack()
        for fingerprint, fp_type, category in [
            ("F:IFOOD", "strong", "strong-cat"),
            ("W:ifood_restaurante", "weak", "weak-cat"),
        ]:
            store.insert("learned_merchant_rules", {
                "scope_type": "user", "user_id": ALICE.user_id, "family_id": None,
                "fingerprint": fingerprint, "fingerprint_type": fp_type,
                "category_id": category, "confidence_base": 0.85,
                "examples_count": 1, "conflict_count": 0, "is_archived": False,
                "last_used_at": NOW,
            })

        rule = rules.lookup(ALICE.user_id, ALICE.family_id, "F:IFOOD", "W:ifood_restaurante")
        assert rule.category_id == "weak-cat"

    def test_ties_broken_by_examples_count(self):
        store, rules, _, _ = _make_stack()
        for owner, examples in [("fam-a", 2), ("fam-b", 7)]:
            store.insert("learned_merchant_rules", {
                "scope_type": "global", "user_id": None, "family_id": owner,
                "fingerprint": "F:IFOOD", "fingerprint_type": "strong",
                "category_id": f"cat-{examples}", "confidence_base": 0.85,
                "examples_count": examples, "conflict_count": 0, "is_archived": False,
                "last_used_at": NOW,
            })
        assert rules.lookup("someone", None, "F:IFOOD", None).category_id == "cat-7"

    def test_other_users_rules_are_invisible(self):
        _, rules, _, feedback = _make_stack()
        feedback.record_feedback(ALICE, _make_feedback(scope="user"))
        assert rules.lookup(BOB.user_id, BOB.family_id, "F:IFOOD", None) is None

    def test_unauthenticated_feedback_refused(self):
        store, _, _, feedback = _make_stack()
        result = feedback.record_feedback(RequestContext(), _make_feedback())
        assert not result.success
        assert result.message == "User not authenticated"
        assert store.count("categorization_feedback") == 0

    def test_family_scope_requires_family(self):
        _, _, _, feedback = _make_stack()
        result = feedback.record_feedback(RequestContext(user_id="solo"), _make_feedback(scope="family"))
        assert not result.success

    def test_history_only_feedback(self):
        store, _, _, feedback = _make_stack()
        result = feedback.record_feedback(ALICE, _make_feedback(apply_to_future=False))
        assert result.success and not result.learned
        assert store.count("learned_merchant_rules") == 0
        audit = store.select("categorization_feedback")
        assert len(audit) == 1
        assert not audit.iloc[0]["was_prediction_correct"]

    def test_descriptor_without_fingerprint_not_learned(self):
        store, _, _, feedback = _make_stack()
        result = feedback.record_feedback(ALICE, _make_feedback(descriptor="** 12/03 **"))
        assert result.success and not result.learned
        assert store.count("learned_merchant_rules") == 0

    def test_duplicate_key_retried_as_update(self):
        store = RacingStore()
        _, rules, _, feedback = _make_stack(store=store)
        result = feedback.record_feedback(ALICE, _make_feedback())
        assert result.success
        assert store.upsert_calls == 2
        assert store.count("learned_merchant_rules") == 1

    def test_store_failure_reported_in_result(self):
        cache = TTLCache(default_ttl=300)
        cache.set(("suggestion", "fam-1", "user-alice", "x"), "cached")
        _, _, _, feedback = _make_stack(store=ReadOnlyStore(), cache=cache)
        result = feedback.record_feedback(ALICE, _make_feedback())
        assert not result.success
        assert "Store unavailable" in result.message
        assert ("suggestion", "fam-1", "user-alice", "x") in cache

    def test_archive_rule(self):
        _, rules, _, feedback = _make_stack()
        created = feedback.record_feedback(ALICE, _make_feedback())

        result = feedback.archive_rule(ALICE, created.rule_id)
        assert result.success
        assert rules.lookup(ALICE.user_id, ALICE.family_id, "F:IFOOD", None) is None
        assert feedback.list_rules(ALICE) == []
        assert len(rules.list_rules(ALICE, include_archived=True)) == 1

        # A new correction after archival creates a fresh rule
        again = feedback.record_feedback(ALICE, _make_feedback(category="casa"))
        assert again.action == FeedbackAction.CREATED

    def test_archive_unknown_rule(self):
        _, _, _, feedback = _make_stack()
        assert not feedback.archive_rule(ALICE, "missing-id").success

    def test_resolve_conflict_clears_counter(self):
        _, rules, _, feedback = _make_stack()
        created = feedback.record_feedback(ALICE, _make_feedback(category="lazer"))
        feedback.record_feedback(ALICE, _make_feedback(category="alimentacao"))

        result = feedback.resolve_conflict(ALICE, created.rule_id, "alimentacao", "alimentacao-delivery")
        assert result.success

        rule = rules.get_rule(ALICE, created.rule_id)
        assert rule.category_id == "alimentacao"
        assert rule.subcategory_id == "alimentacao-delivery"
        assert rule.conflict_count == 0
        assert rule.confidence_base == pytest.approx(0.85)

    def test_from_record_rejects_unknown_fields(self):
        with pytest.raises(ValueError, match="Unknown"):
            LearnedRule.from_record({
                "id": "r1", "scope_type": "user", "fingerprint_type": "strong",
                "fingerprint": "F:X", "category_id": "c", "colour": "blue",
            })

    def test_from_record_rejects_unknown_scope(self):
        with pytest.raises(ValueError):
            LearnedRule.from_record({
                "id": "r1", "scope_type": "planet", "fingerprint_type": "strong",
                "fingerprint": "F:X", "category_id": "c",
            })


# =============================================================================
# CATEGORIZATION ENGINE TESTS
# =============================================================================

class TestCategorizationEngine:
    def test_unknown_descriptor_falls_back(self):
        _, _, engine, _ = _make_stack()
        suggestion = engine.suggest("UBER *TRIP SAO PAULO", ALICE)

        assert suggestion.category_id == ""
        assert suggestion.confidence == 0
        assert suggestion.source == PredictionSource.FALLBACK

    def test_short_descriptor_falls_back(self):
        _, _, engine, _ = _make_stack()
        assert engine.suggest("a*", ALICE).is_fallback
        assert engine.suggest("", ALICE).is_fallback

    def test_dictionary_hit(self):
        _, _, engine, _ = _make_stack()
        suggestion = engine.suggest("IFOOD *RESTAURANTE", ALICE)
        assert suggestion.source == PredictionSource.REGEX
        assert suggestion.category_id == "alimentacao"
        assert suggestion.confidence == 0.95

    def test_correction_is_learned_for_similar_descriptor(self):
        _, _, engine, feedback = _make_stack()
        before = engine.suggest("IFOOD *RESTAURANTE XYZ", ALICE)
        assert before.source == PredictionSource.REGEX

        result = feedback.record_feedback(ALICE, _make_feedback(
            descriptor="IFOOD *RESTAURANTE", category="lazer", scope="user",
        ))
        assert result.success

        after = engine.suggest("IFOOD *RESTAURANTE XYZ", ALICE)
        assert after.category_id == "lazer"
        assert after.source == PredictionSource.LEARNED
        assert after.scope == LearningScope.USER
        assert after.match_count == 1

    def test_learned_rule_always_beats_dictionary(self):
        _, _, engine, feedback = _make_stack()
        feedback.record_feedback(ALICE, _make_feedback(descriptor="NETFLIX.COM", category="lazer"))
        for descriptor in ["NETFLIX.COM", "PAG*NETFLIX.COM SP", "NETFLIX ASSINATURA"]:
            assert engine.suggest(descriptor, ALICE).source == PredictionSource.LEARNED

    def test_anonymous_caller_skips_learned_rules(self):
        _, _, engine, feedback = _make_stack()
        feedback.record_feedback(ALICE, _make_feedback(scope="global"))
        suggestion = engine.suggest("IFOOD *RESTAURANTE", RequestContext())
        assert suggestion.source == PredictionSource.REGEX

    def test_conflicted_rule_is_marked(self):
        _, _, engine, feedback = _make_stack()
        feedback.record_feedback(ALICE, _make_feedback(category="lazer"))
        feedback.record_feedback(ALICE, _make_feedback(category="casa"))
        suggestion = engine.suggest("IFOOD *RESTAURANTE", ALICE)
        assert suggestion.category_id == "lazer"
        assert suggestion.has_conflict

    def test_store_failure_degrades_to_dictionary(self):
        _, _, engine, _ = _make_stack(store=FailingStore())
        suggestion = engine.suggest("IFOOD *RESTAURANTE", ALICE)
        assert suggestion.source == PredictionSource.REGEX
        assert engine.stats["errors"] == 1

    def test_unreadable_rule_degrades_to_dictionary(self):
        store, _, engine, _ = _make_stack()
        store.insert("learned_merchant_rules", {
            "scope_type": "user", "user_id": ALICE.user_id, "family_id": None,
            "fingerprint": "F:IFOOD", "fingerprint_type": "sideways",
            "category_id": "lazer", "confidence_base": 0.85,
            "examples_count": 1, "conflict_count": 0, "is_archived": False,
            "last_used_at": NOW,
        })

        suggestion = engine.suggest("IFOOD *RESTAURANTE", ALICE)
        assert suggestion.source == PredictionSource.REGEX
        assert suggestion.category_id == "alimentacao"
        assert engine.stats["errors"] == 1

    @pytest.mark.parametrize("descriptor", [
        "IFOOD *RESTAURANTE", "UBER *TRIP SAO PAULO", "", "x", "PIX RECEBIDO",
        "CEMIG ENERGIA 12/2025", "TARIFA PACOTE SERVICOS",
    ])
    def test_confidence_is_bounded(self, descriptor):
        _, _, engine, _ = _make_stack()
        suggestion = engine.suggest(descriptor, ALICE)
        assert 0.0 <= suggestion.confidence <= 1.0
        if suggestion.source == PredictionSource.FALLBACK:
            assert suggestion.confidence == 0 and suggestion.category_id == ""

    def test_statistics_count_sources(self):
        _, _, engine, _ = _make_stack()
        engine.suggest("IFOOD *RESTAURANTE", ALICE)
        engine.suggest("UBER *TRIP SAO PAULO", ALICE)
        engine.suggest("UBER *TRIP SAO PAULO", ALICE)
        assert engine.stats["regex"] == 1
        assert engine.stats["fallback"] == 2
        assert engine.stats["total"] == 3

        engine.reset_statistics()
        assert engine.stats["total"] == 0

    def test_suggestion_invariant_enforced(self):
        suggestion = CategorizationSuggestion(category_id="", confidence=0.9, source="regex")
        assert suggestion.is_fallback and suggestion.confidence == 0.0
        assert CategorizationSuggestion("casa", 1.7, "learned").confidence == 1.0


# =============================================================================
# FEEDBACK PIPELINE TESTS
# =============================================================================

class TestFeedbackInvalidation:
    def test_user_scope_only_invalidates_that_user(self):
        cache = TTLCache(default_ttl=300)
        _, _, engine, feedback = _make_stack(cache=cache)
        engine.suggest("IFOOD *RESTAURANTE", ALICE)
        engine.suggest("IFOOD *RESTAURANTE", BOB)

        feedback.record_feedback(ALICE, _make_feedback(scope="user"))

        assert engine.suggest("IFOOD *RESTAURANTE", ALICE).source == PredictionSource.LEARNED
        assert engine.suggest("IFOOD *RESTAURANTE", BOB).source == PredictionSource.REGEX

    def test_family_scope_reaches_family_members(self):
        cache = TTLCache(default_ttl=300)
        _, _, engine, feedback = _make_stack(cache=cache)
        engine.suggest("IFOOD *RESTAURANTE", BOB)

        feedback.record_feedback(ALICE, _make_feedback(scope="family"))

        suggestion = engine.suggest("IFOOD *RESTAURANTE", BOB)
        assert suggestion.source == PredictionSource.LEARNED
        assert suggestion.scope == LearningScope.FAMILY

    def test_global_scope_reaches_everyone(self):
        cache = TTLCache(default_ttl=300)
        _, _, engine, feedback = _make_stack(cache=cache)
        engine.suggest("IFOOD *RESTAURANTE", CAROL)

        feedback.record_feedback(ALICE, _make_feedback(scope="global"))

        assert engine.suggest("IFOOD *RESTAURANTE", CAROL).category_id == "lazer"

    def test_history_cache_invalidated(self):
        cache = TTLCache(default_ttl=300)
        cache.set(("category-history", "fam-1"), {"stale": True})
        _, _, _, feedback = _make_stack(cache=cache)
        feedback.record_feedback(ALICE, _make_feedback(apply_to_future=False))
        assert ("category-history", "fam-1") not in cache

    def test_user_scope_reaches_same_user_in_other_families(self):
        cache = TTLCache(default_ttl=300)
        _, _, engine, feedback = _make_stack(cache=cache)
        alice_at_parents = RequestContext(user_id=ALICE.user_id, family_id="fam-2")
        alice_alone = RequestContext(user_id=ALICE.user_id)
        assert engine.suggest("IFOOD *RESTAURANTE", alice_at_parents).category_id == "alimentacao"
        engine.suggest("IFOOD *RESTAURANTE", alice_alone)

        feedback.record_feedback(ALICE, _make_feedback(scope="user"))

        for context in (alice_at_parents, alice_alone):
            suggestion = engine.suggest("IFOOD *RESTAURANTE", context)
            assert suggestion.source == PredictionSource.LEARNED
            assert suggestion.category_id == "lazer"


# =============================================================================
# HISTORY SUGGESTER TESTS
# =============================================================================

class TestHistorySuggester:
    def _make_suggester(self, rows, store=None, cache=None) -> HistorySuggester:
        store = store or SQLiteStore()
        store.bulk_insert("transactions", rows)
        return HistorySuggester(store, cache=cache, clock=lambda: NOW)

    def test_history_match(self):
        suggester = self._make_suggester(_make_history_txns([
            ("PADARIA CENTRAL 12/11", "alimentacao", 30),
            ("PADARIA CENTRAL 03/12", "alimentacao", 0),
        ]))
        suggestion = suggester.suggest("PADARIA CENTRAL 15/12", "fam-1")

        assert suggestion.source == PredictionSource.HISTORY
        assert suggestion.category_id == "alimentacao"
        assert suggestion.match_count == 2
        # min(0.95, 0.70 + 0.05 * 2) * max(0.8, 1 - 0 / 180 * 0.2)
        assert suggestion.confidence == pytest.approx(0.80)

    def test_most_recent_categorization_wins(self):
        suggester = self._make_suggester(_make_history_txns([
            ("LOJA DO ZE", "casa", 60),
            ("LOJA DO ZE", "lazer", 5),
            ("LOJA DO ZE", "casa", 90),
        ]))
        suggestion = suggester.suggest("LOJA DO ZE", "fam-1")
        assert suggestion.category_id == "lazer"
        assert suggestion.match_count == 3

    def test_confidence_decays_with_age(self):
        suggester = HistorySuggester(SQLiteStore(), clock=lambda: NOW)
        fresh = suggester.confidence(1, NOW, NOW)
        old = suggester.confidence(1, NOW - timedelta(days=90), NOW)
        ancient = suggester.confidence(1, NOW - timedelta(days=400), NOW)
        assert fresh == pytest.approx(0.75)
        assert old == pytest.approx(0.75 * 0.9)
        assert ancient == pytest.approx(0.75 * 0.8)

    def test_entries_outside_window_ignored(self):
        suggester = self._make_suggester(_make_history_txns([("LOJA DO ZE", "casa", 200)]))
        assert suggester.suggest("LOJA DO ZE", "fam-1").is_fallback

    def test_other_family_history_ignored(self):
        suggester = self._make_suggester(_make_history_txns([("LOJA DO ZE", "casa", 1)], family_id="fam-2"))
        assert suggester.suggest("LOJA DO ZE", "fam-1").is_fallback

    def test_falls_back_to_dictionary(self):
        suggester = self._make_suggester([])
        suggestion = suggester.suggest("IFOOD *RESTAURANTE", "fam-1")
        assert suggestion.source == PredictionSource.REGEX

    def test_store_failure_means_empty_history(self):
        suggester = HistorySuggester(FailingStore(), clock=lambda: NOW)
        assert suggester.history("fam-1") == {}
        assert suggester.suggest("LOJA DO ZE", "fam-1").is_fallback
        assert suggester.recent_categories("fam-1") == []

    def test_history_is_cached(self):
        cache = TTLCache(default_ttl=300)
        store = SQLiteStore()
        suggester = self._make_suggester(_make_history_txns([("LOJA DO ZE", "casa", 1)]), store, cache)
        suggester.suggest("LOJA DO ZE", "fam-1")
        assert ("category-history", "fam-1") in cache

        store.bulk_insert("transactions", _make_history_txns([("LOJA NOVA", "lazer", 0)]))
        assert suggester.suggest("LOJA NOVA", "fam-1").is_fallback

        cache.invalidate([("category-history", "fam-1")])
        assert suggester.suggest("LOJA NOVA", "fam-1").category_id == "lazer"

    def test_recent_categories(self):
        suggester = self._make_suggester(_make_history_txns([
            ("A LOJA", "casa", 1),
            ("B LOJA", "lazer", 2),
            ("C LOJA", "lazer", 3),
            ("D LOJA", "educacao", 4),
            ("E LOJA", "educacao", 5),
            ("F LOJA", "educacao", 6),
            ("G LOJA", "transporte", 45),
        ]))
        assert suggester.recent_categories("fam-1") == ["educacao", "lazer", "casa"]
        assert suggester.recent_categories("fam-1", limit=1) == ["educacao"]
