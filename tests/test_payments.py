"""
Tests for the one-time payment reconciler (payment_intent.succeeded).
"""

import json

import pytest
from boto3.dynamodb.conditions import Key
from freezegun import freeze_time


def _intent(intent_id="pi_123", amount=4900, **metadata):
    return {
        "id": intent_id,
        "object": "payment_intent",
        "amount": amount,
        "currency": "usd",
        "metadata": metadata,
    }


def _enrollments(mock_dynamodb, user_id="user_123"):
    return mock_dynamodb.Table("coachpay-program-enrollments").query(
        IndexName="user-index",
        KeyConditionExpression=Key("user_id").eq(user_id),
    )["Items"]


@pytest.fixture
def funnel(mock_dynamodb):
    """A group program with a flow session waiting for payment."""
    mock_dynamodb.Table("coachpay-programs").put_item(
        Item={"pk": "prog_1", "type": "group", "name": "90 Day Sprint", "price_in_cents": 9900}
    )
    mock_dynamodb.Table("coachpay-flow-sessions").put_item(
        Item={
            "pk": "flow_1",
            "program_id": "prog_1",
            "organization_id": "org_1",
            "data": {"goal": "Launch my course", "workdayStyle": "mornings", "favoriteColor": "green"},
        }
    )
    return mock_dynamodb


def _add_cohort(mock_dynamodb, cohort_id, start_date, created_at="2025-01-01T00:00:00+00:00", **extra):
    item = {
        "pk": cohort_id,
        "program_id": "prog_1",
        "start_date": start_date,
        "created_at": created_at,
        "status": "upcoming",
        "enrollment_open": True,
        "current_enrollment": 0,
    }
    item.update(extra)
    mock_dynamodb.Table("coachpay-program-cohorts").put_item(Item=item)


class TestRouting:
    def test_unknown_type_is_ignored(self, mock_dynamodb, services):
        from billing.payments import handle_payment_intent_succeeded

        handle_payment_intent_succeeded(_intent(type="credit_pack", userId="user_123"), services)

        assert mock_dynamodb.Table("coachpay-content-purchases").scan()["Items"] == []
        assert mock_dynamodb.Table("coachpay-program-enrollments").scan()["Items"] == []

    def test_missing_type_is_ignored(self, mock_dynamodb, services):
        from billing.payments import handle_payment_intent_succeeded

        handle_payment_intent_succeeded(_intent(userId="user_123"), services)

        assert mock_dynamodb.Table("coachpay-content-purchases").scan()["Items"] == []


class TestContentPurchase:
    def test_records_purchase_once(self, mock_dynamodb, services):
        """Redelivery of the same payment intent must not create a second record."""
        from billing.payments import handle_payment_intent_succeeded

        intent = _intent(
            type="content_purchase",
            userId="user_123",
            contentType="course",
            contentId="course_9",
            organizationId="org_1",
        )
        handle_payment_intent_succeeded(intent, services)
        handle_payment_intent_succeeded(intent, services)

        purchases = mock_dynamodb.Table("coachpay-content-purchases").scan()["Items"]
        assert len(purchases) == 1
        purchase = purchases[0]
        assert purchase["pk"].startswith("cpur_")
        assert purchase["user_id"] == "user_123"
        assert purchase["content_type"] == "course"
        assert purchase["content_id"] == "course_9"
        assert purchase["organization_id"] == "org_1"
        assert purchase["amount_paid"] == 4900
        assert purchase["currency"] == "usd"
        assert purchase["stripe_payment_intent_id"] == "pi_123"

    def test_missing_metadata_records_nothing(self, mock_dynamodb, services):
        from billing.payments import handle_content_purchase

        handle_content_purchase(_intent(type="content_purchase", userId="user_123", contentType="course"), services)

        assert mock_dynamodb.Table("coachpay-content-purchases").scan()["Items"] == []


class TestFunnelPayment:
    def test_without_flow_session_id_is_skipped(self, funnel, services):
        from billing.payments import handle_funnel_payment

        handle_funnel_payment(_intent(type="funnel_payment", userId="user_123"), services)

        assert _enrollments(funnel) == []

    @freeze_time("2026-03-01T12:00:00Z")
    def test_enrolls_into_earliest_open_cohort(self, funnel, seed_user, services):
        from billing.payments import handle_funnel_payment

        seed_user("user_123")
        _add_cohort(funnel, "cohort_late", "2026-05-01T00:00:00Z")
        _add_cohort(funnel, "cohort_next", "2026-04-01T00:00:00Z")
        _add_cohort(funnel, "cohort_closed", "2026-03-15T00:00:00Z", enrollment_open=False)
        _add_cohort(funnel, "cohort_done", "2026-01-01T00:00:00Z", status="completed")

        handle_funnel_payment(
            _intent(type="funnel_payment", userId="user_123", flowSessionId="flow_1"), services
        )

        enrollments = _enrollments(funnel)
        assert len(enrollments) == 1
        enrollment = enrollments[0]
        assert enrollment["cohort_id"] == "cohort_next"
        assert enrollment["status"] == "upcoming"
        assert enrollment["started_at"] == "2026-04-01T00:00:00Z"
        assert enrollment["amount_paid"] == 4900
        assert enrollment["organization_id"] == "org_1"
        assert enrollment["last_assigned_day_index"] == 0
        assert enrollment["stripe_payment_intent_id"] == "pi_123"

        cohort = funnel.Table("coachpay-program-cohorts").get_item(Key={"pk": "cohort_next"})["Item"]
        assert cohort["current_enrollment"] == 1

        session = funnel.Table("coachpay-flow-sessions").get_item(Key={"pk": "flow_1"})["Item"]
        assert "completed_at" in session
        assert session["data"]["stripePaymentIntentId"] == "pi_123"

        user = funnel.Table("coachpay-users").get_item(Key={"pk": "user_123"})["Item"]
        assert user["current_program_id"] == "prog_1"
        assert user["current_program_enrollment_id"] == enrollment["pk"]
        assert user["organization_id"] == "org_1"
        assert user["goal"] == "Launch my course"
        assert user["workday_style"] == "mornings"
        assert "favoriteColor" not in user
        assert "favorite_color" not in user

    @freeze_time("2026-03-01T12:00:00Z")
    def test_cohort_start_date_tie_goes_to_oldest(self, funnel, services):
        from billing.payments import handle_funnel_payment

        _add_cohort(funnel, "cohort_b", "2026-04-01T00:00:00Z", created_at="2025-06-01T00:00:00+00:00")
        _add_cohort(funnel, "cohort_a", "2026-04-01T00:00:00Z", created_at="2025-02-01T00:00:00+00:00")

        handle_funnel_payment(
            _intent(type="funnel_payment", userId="user_123", flowSessionId="flow_1"), services
        )

        assert _enrollments(funnel)[0]["cohort_id"] == "cohort_a"

    @freeze_time("2026-03-01T12:00:00Z")
    def test_started_cohort_enrolls_active(self, funnel, services):
        from billing.payments import handle_funnel_payment

        _add_cohort(funnel, "cohort_now", "2026-02-01T00:00:00Z", status="active")

        handle_funnel_payment(
            _intent(type="funnel_payment", userId="user_123", flowSessionId="flow_1"), services
        )

        enrollment = _enrollments(funnel)[0]
        assert enrollment["status"] == "active"
        assert enrollment["started_at"] == "2026-03-01T12:00:00+00:00"

    def test_individual_program_without_cohort(self, funnel, services):
        from billing.payments import handle_funnel_payment

        funnel.Table("coachpay-programs").put_item(
            Item={"pk": "prog_1", "type": "individual", "price_in_cents": 9900}
        )

        handle_funnel_payment(
            _intent(type="funnel_payment", userId="user_123", flowSessionId="flow_1", amount=0), services
        )

        enrollment = _enrollments(funnel)[0]
        assert "cohort_id" not in enrollment
        assert enrollment["status"] == "active"
        # Falls back to the program price when the intent carries no amount
        assert enrollment["amount_paid"] == 9900

    def test_redelivery_is_idempotent_and_counts_invite_once(self, funnel, services):
        from billing.payments import handle_funnel_payment

        funnel.Table("coachpay-program-invites").put_item(
            Item={
                "pk": "inv_1",
                "target_squad_id": "squad_new",
                "target_cohort_id": "cohort_x",
                "payment_status": "pre_paid",
                "use_count": 0,
            }
        )
        _add_cohort(funnel, "cohort_x", "2020-01-01T00:00:00Z", status="active")
        funnel.Table("coachpay-flow-sessions").update_item(
            Key={"pk": "flow_1"},
            UpdateExpression="SET invite_id = :inv",
            ExpressionAttributeValues={":inv": "inv_1"},
        )
        squads = funnel.Table("coachpay-squad-members")
        squads.put_item(Item={"pk": "user_123", "sk": "squad_old", "status": "active"})
        squads.put_item(Item={"pk": "user_123", "sk": "squad_new", "status": "active"})

        intent = _intent(type="funnel_payment", userId="user_123", flowSessionId="flow_1")
        handle_funnel_payment(intent, services)
        handle_funnel_payment(intent, services)

        enrollments = _enrollments(funnel)
        assert len(enrollments) == 1
        assert enrollments[0]["cohort_id"] == "cohort_x"
        assert enrollments[0]["squad_id"] == "squad_new"
        # Pre-paid invites are free at enrollment time
        assert enrollments[0]["amount_paid"] == 0

        invite = funnel.Table("coachpay-program-invites").get_item(Key={"pk": "inv_1"})["Item"]
        assert invite["use_count"] == 1
        assert invite["used_by"] == "user_123"

        # Invite-assigned cohorts are not counted again
        cohort = funnel.Table("coachpay-program-cohorts").get_item(Key={"pk": "cohort_x"})["Item"]
        assert cohort["current_enrollment"] == 0

        assert squads.get_item(Key={"pk": "user_123", "sk": "squad_old"})["Item"]["status"] == "archived"
        assert squads.get_item(Key={"pk": "user_123", "sk": "squad_new"})["Item"]["status"] == "active"

    def test_existing_enrollment_for_payment_completes_session(self, funnel, services):
        from billing.payments import handle_funnel_payment

        funnel.Table("coachpay-program-enrollments").put_item(
            Item={"pk": "enr_existing", "user_id": "user_123", "program_id": "prog_1",
                  "stripe_payment_intent_id": "pi_123", "status": "active"}
        )

        handle_funnel_payment(
            _intent(type="funnel_payment", userId="user_123", flowSessionId="flow_1"), services
        )

        assert len(_enrollments(funnel)) == 1
        session = funnel.Table("coachpay-flow-sessions").get_item(Key={"pk": "flow_1"})["Item"]
        assert "completed_at" in session

    def test_live_enrollment_gets_payment_attached(self, funnel, services):
        """Enrolled through another path: attach the payment instead of enrolling twice."""
        from billing.payments import handle_funnel_payment

        funnel.Table("coachpay-program-enrollments").put_item(
            Item={"pk": "enr_client", "user_id": "user_123", "program_id": "prog_1", "status": "upcoming"}
        )

        handle_funnel_payment(
            _intent(type="funnel_payment", userId="user_123", flowSessionId="flow_1"), services
        )

        enrollments = _enrollments(funnel)
        assert len(enrollments) == 1
        assert enrollments[0]["stripe_payment_intent_id"] == "pi_123"
        assert enrollments[0]["amount_paid"] == 4900

    def test_completed_session_is_not_reprocessed(self, funnel, services):
        from billing.payments import handle_funnel_payment

        funnel.Table("coachpay-flow-sessions").update_item(
            Key={"pk": "flow_1"},
            UpdateExpression="SET completed_at = :now",
            ExpressionAttributeValues={":now": "2026-01-01T00:00:00+00:00"},
        )

        handle_funnel_payment(
            _intent(type="funnel_payment", userId="user_123", flowSessionId="flow_1", intent_id="pi_other"),
            services,
        )

        assert _enrollments(funnel) == []

    def test_missing_program_aborts(self, funnel, services):
        from billing.payments import handle_funnel_payment

        funnel.Table("coachpay-programs").delete_item(Key={"pk": "prog_1"})

        handle_funnel_payment(
            _intent(type="funnel_payment", userId="user_123", flowSessionId="flow_1"), services
        )

        assert _enrollments(funnel) == []
        session = funnel.Table("coachpay-flow-sessions").get_item(Key={"pk": "flow_1"})["Item"]
        assert "completed_at" not in session


def _bumps(*bumps):
    return json.dumps(list(bumps))


CONTENT_BUMP = {
    "productType": "content",
    "productId": "guide_1",
    "contentType": "download",
    "name": "Launch checklist",
    "priceInCents": 2000,
    "discountPercent": 50,
    "finalPriceCents": 1000,
}
PROGRAM_BUMP = {"productType": "program", "productId": "prog_bonus", "name": "Bonus", "finalPriceCents": 4900}
SQUAD_BUMP = {"productType": "squad", "productId": "squad_vip", "name": "VIP squad", "finalPriceCents": 1500}


class TestOrderBumps:
    def test_content_purchase_records_every_bump(self, mock_dynamodb, services):
        from billing.payments import handle_payment_intent_succeeded

        intent = _intent(
            type="content_purchase",
            userId="user_123",
            contentType="course",
            contentId="course_9",
            organizationId="org_1",
            orderBumps=_bumps(CONTENT_BUMP, PROGRAM_BUMP, SQUAD_BUMP),
        )

        handle_payment_intent_succeeded(intent, services)

        purchases = {p["content_id"]: p for p in mock_dynamodb.Table("coachpay-content-purchases").scan()["Items"]}
        assert set(purchases) == {"course_9", "guide_1"}
        bump = purchases["guide_1"]
        assert bump["content_type"] == "download"
        assert bump["amount_paid"] == 1000
        assert bump["is_order_bump"] is True
        assert bump["organization_id"] == "org_1"
        assert "is_order_bump" not in purchases["course_9"]

        enrollment = _enrollments(mock_dynamodb)[0]
        assert enrollment["program_id"] == "prog_bonus"
        assert enrollment["status"] == "pending_activation"
        assert enrollment["amount_paid"] == 4900

        squad = mock_dynamodb.Table("coachpay-squad-purchases").scan()["Items"]
        assert len(squad) == 1
        assert squad[0]["squad_id"] == "squad_vip"
        assert squad[0]["status"] == "pending_activation"

    def test_funnel_payment_records_bumps(self, funnel, services):
        from billing.payments import handle_funnel_payment

        handle_funnel_payment(
            _intent(type="funnel_payment", userId="user_123", flowSessionId="flow_1", orderBumps=_bumps(CONTENT_BUMP)),
            services,
        )

        purchases = funnel.Table("coachpay-content-purchases").scan()["Items"]
        assert len(purchases) == 1
        assert purchases[0]["content_id"] == "guide_1"
        assert purchases[0]["organization_id"] == "org_1"
        assert [e["program_id"] for e in _enrollments(funnel)] == ["prog_1"]

    def test_already_owned_content_is_not_duplicated(self, mock_dynamodb, services):
        from billing.order_bumps import process_order_bumps

        mock_dynamodb.Table("coachpay-content-purchases").put_item(
            Item={"pk": "cpur_old", "user_id": "user_123", "content_type": "download", "content_id": "guide_1"}
        )

        created = process_order_bumps(services, "user_123", "org_1", "pi_123", _bumps(CONTENT_BUMP))

        assert created == 0
        assert len(mock_dynamodb.Table("coachpay-content-purchases").scan()["Items"]) == 1

    def test_replay_creates_nothing_new(self, mock_dynamodb, services):
        from billing.order_bumps import process_order_bumps

        bumps = _bumps(CONTENT_BUMP, PROGRAM_BUMP, SQUAD_BUMP)

        assert process_order_bumps(services, "user_123", "org_1", "pi_123", bumps) == 3
        assert process_order_bumps(services, "user_123", "org_1", "pi_123", bumps) == 0

        assert len(mock_dynamodb.Table("coachpay-squad-purchases").scan()["Items"]) == 1
        assert len(_enrollments(mock_dynamodb)) == 1

    def test_malformed_bumps_do_not_block_primary_purchase(self, mock_dynamodb, services):
        from billing.payments import handle_payment_intent_succeeded

        intent = _intent(
            type="content_purchase",
            userId="user_123",
            contentType="course",
            contentId="course_9",
            orderBumps="{not json",
        )

        handle_payment_intent_succeeded(intent, services)

        purchases = mock_dynamodb.Table("coachpay-content-purchases").scan()["Items"]
        assert [p["content_id"] for p in purchases] == ["course_9"]

    def test_unknown_and_incomplete_bumps_are_skipped(self, mock_dynamodb, services):
        from billing.order_bumps import process_order_bumps

        bumps = _bumps(
            {"productType": "coaching_call", "productId": "call_1", "finalPriceCents": 500},
            {"productType": "content", "finalPriceCents": 500},
            {"productType": "content", "productId": "guide_2", "finalPriceCents": 500},
        )

        assert process_order_bumps(services, "user_123", "org_1", "pi_123", bumps) == 0
        assert mock_dynamodb.Table("coachpay-content-purchases").scan()["Items"] == []


class TestExtractProfileFields:
    def test_only_allow_listed_non_empty_fields(self):
        from billing.payments import extract_profile_fields

        data = {"goal": "Ship", "goalSummary": "", "supportNeeds": ["accountability"], "other": 1}

        assert extract_profile_fields(data) == {"goal": "Ship", "support_needs": ["accountability"]}
