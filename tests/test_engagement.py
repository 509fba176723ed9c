import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from bson import ObjectId

from engagement import EngagementLedger, UpvoteOutcome
from errors import ValidationError
from moderation import ProductCatalog


class SerializedCollection:
    """Runs each collection call under one lock, like single-document atomicity in the store"""

    def __init__(self, collection):
        self._collection = collection
        self._lock = threading.Lock()

    def __getattr__(self, name):
        attr = getattr(self._collection, name)
        if not callable(attr):
            return attr

        def call(*args, **kwargs):
            with self._lock:
                return attr(*args, **kwargs)

        return call


@pytest.fixture()
def ledger(db):
    return EngagementLedger(db)


@pytest.fixture()
def product_id(db):
    return ProductCatalog(db).submit("owner@x.com", {"name": "X"})


def _product(db, product_id):
    return db["products"].find_one({"_id": ObjectId(product_id)})


class TestUpvote:
    def test_first_upvote_counts_once(self, db, ledger, product_id):
        assert ledger.upvote(product_id, "a@x.com") is UpvoteOutcome.APPLIED
        doc = _product(db, product_id)
        assert doc["upvotes"] == 1
        assert doc["voters"] == ["a@x.com"]

    def test_repeat_upvote_is_no_change(self, db, ledger, product_id):
        ledger.upvote(product_id, "a@x.com")
        for _ in range(3):
            assert ledger.upvote(product_id, "a@x.com") is UpvoteOutcome.NO_CHANGE
        doc = _product(db, product_id)
        assert doc["upvotes"] == 1
        assert doc["voters"] == ["a@x.com"]

    def test_distinct_voters_each_count(self, db, ledger, product_id):
        for voter in ("a@x.com", "b@x.com", "c@x.com"):
            ledger.upvote(product_id, voter)
        doc = _product(db, product_id)
        assert doc["upvotes"] == 3
        assert len(doc["voters"]) == doc["upvotes"]

    def test_missing_product_is_no_change(self, ledger):
        assert ledger.upvote(str(ObjectId()), "a@x.com") is UpvoteOutcome.NO_CHANGE

    def test_malformed_id_is_rejected(self, ledger):
        with pytest.raises(ValidationError):
            ledger.upvote("not-an-id", "a@x.com")

    def test_has_voted(self, ledger, product_id):
        assert not ledger.has_voted(product_id, "a@x.com")
        ledger.upvote(product_id, "a@x.com")
        assert ledger.has_voted(product_id, "a@x.com")

    def test_concurrent_upvotes_from_same_voter_count_once(self, db, product_id):
        store = {"products": SerializedCollection(db["products"]), "reports": db["reports"]}
        ledger = EngagementLedger(store)

        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(lambda _: ledger.upvote(product_id, "a@x.com"), range(25)))

        assert outcomes.count(UpvoteOutcome.APPLIED) == 1
        doc = _product(db, product_id)
        assert doc["upvotes"] == 1
        assert doc["voters"] == ["a@x.com"]

    def test_concurrent_upvotes_from_many_voters_keep_count_equal_to_voters(self, db, product_id):
        store = {"products": SerializedCollection(db["products"]), "reports": db["reports"]}
        ledger = EngagementLedger(store)
        voters = [f"user{i % 5}@x.com" for i in range(30)]

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda v: ledger.upvote(product_id, v), voters))

        doc = _product(db, product_id)
        assert doc["upvotes"] == 5
        assert sorted(doc["voters"]) == sorted(set(voters))


class TestReports:
    def test_report_appends_every_time(self, db, ledger, product_id):
        ledger.report(product_id, "a@x.com")
        ledger.report(product_id, "a@x.com")
        assert db["reports"].count_documents({"productId": product_id}) == 2

    def test_report_does_not_require_existing_product(self, db, ledger):
        ledger.report(str(ObjectId()), "a@x.com")
        assert db["reports"].count_documents({}) == 1

    def test_report_rejects_malformed_id(self, ledger):
        with pytest.raises(ValidationError):
            ledger.report("abc", "a@x.com")

    def test_summary_tolerates_deleted_products(self, db, ledger, product_id):
        gone = ProductCatalog(db).submit("owner@x.com", {"name": "Gone"})
        ledger.report(product_id, "a@x.com")
        ledger.report(gone, "b@x.com")
        db["products"].delete_one({"_id": ObjectId(gone)})

        reports = {r["productId"]: r for r in ledger.list_reports_with_product_summary()}

        assert reports[product_id]["productName"] == "X"
        assert reports[product_id]["productExists"] is True
        assert reports[gone]["productName"] is None
        assert reports[gone]["productExists"] is False
