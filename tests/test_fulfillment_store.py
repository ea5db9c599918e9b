from src.domain.fulfillment_store import (
    STATUS_CONFIRMED,
    STATUS_FAILED,
    STATUS_PENDING,
    FulfillmentRequestStore,
)


def _store(db, sleeps=None):
    recorded = sleeps if sleeps is not None else []
    return FulfillmentRequestStore(db, pending_wait_seconds=2.0, sleep=recorded.append)


def test_new_key_claims_fresh_pending_row(fake_db):
    store = _store(fake_db)

    claim = store.claim("pi_1", {"customer_name": "Dana"})

    assert claim.fresh is True
    assert claim.row["status"] == STATUS_PENDING
    assert claim.row["payment_intent_id"] == "pi_1"
    assert claim.row["crm_job_id"] is None
    assert len(fake_db.rows("fulfillment_requests")) == 1


def test_confirmed_row_is_returned_without_waiting(fake_db):
    sleeps = []
    store = _store(fake_db, sleeps)
    row = store.claim("pi_1", {}).row
    store.mark_confirmed(
        row["id"],
        crm_customer_id=1,
        crm_location_id=2,
        crm_job_id=500,
        crm_job_number="J-500",
        crm_appointment_id=9,
    )

    claim = store.claim("pi_1", {})

    assert claim.fresh is False
    assert claim.has_job is True
    assert claim.row["crm_job_number"] == "J-500"
    assert claim.row["status"] == STATUS_CONFIRMED
    assert sleeps == []


def test_pending_row_waits_once_and_rereads(fake_db):
    sleeps = []
    store = _store(fake_db, sleeps)
    row = store.claim("pi_1", {}).row

    def _confirm_during_wait(seconds):
        sleeps.append(seconds)
        store.mark_confirmed(
            row["id"],
            crm_customer_id=1,
            crm_location_id=2,
            crm_job_id=500,
            crm_job_number="J-500",
            crm_appointment_id=None,
        )

    waiting_store = FulfillmentRequestStore(fake_db, pending_wait_seconds=2.0, sleep=_confirm_during_wait)
    claim = waiting_store.claim("pi_1", {})

    assert sleeps == [2.0]
    assert claim.fresh is False
    assert claim.row["crm_job_number"] == "J-500"


def test_pending_row_still_processing_after_single_wait(fake_db):
    sleeps = []
    store = _store(fake_db, sleeps)
    store.claim("pi_1", {})

    claim = store.claim("pi_1", {})

    assert sleeps == [2.0]
    assert claim.fresh is False
    assert claim.processing is True


def test_failed_row_is_replaced_by_fresh_attempt(fake_db):
    store = _store(fake_db)
    first = store.claim("pi_1", {}).row
    store.mark_failed(first["id"], "Job type not found")

    claim = store.claim("pi_1", {})

    rows = fake_db.rows("fulfillment_requests")
    assert claim.fresh is True
    assert claim.row["id"] != first["id"]
    assert len(rows) == 1
    assert rows[0]["status"] == STATUS_PENDING
    assert rows[0]["last_error"] is None


def test_mark_failed_keeps_crm_ids_null(fake_db):
    store = _store(fake_db)
    row = store.claim("pi_1", {}).row

    store.mark_failed(row["id"], "boom")

    stored = store.get("pi_1")
    assert stored["status"] == STATUS_FAILED
    assert stored["last_error"] == "boom"
    assert stored["crm_job_id"] is None


def test_unique_violation_on_insert_rereads_winner(fake_db):
    sleeps = []
    store = _store(fake_db, sleeps)
    winner = store.claim("pi_1", {}).row
    store.mark_confirmed(
        winner["id"],
        crm_customer_id=1,
        crm_location_id=2,
        crm_job_id=500,
        crm_job_number="J-500",
        crm_appointment_id=None,
    )
    lookups = []
    original_get = store.get

    def _racing_get(key):
        # Simulate losing the race: the first lookup happens before the winner's insert.
        lookups.append(key)
        if len(lookups) == 1:
            return None
        return original_get(key)

    store.get = _racing_get
    claim = store.claim("pi_1", {})

    assert claim.fresh is False
    assert claim.row["id"] == winner["id"]
    assert len(fake_db.rows("fulfillment_requests")) == 1
    assert sleeps == []


def test_list_by_status_filters_rows(fake_db):
    store = _store(fake_db)
    failed = store.claim("pi_1", {}).row
    store.mark_failed(failed["id"], "boom")
    store.claim("pi_2", {})

    rows = store.list_by_status(STATUS_FAILED)

    assert [row["payment_intent_id"] for row in rows] == ["pi_1"]
