"""Tests for activity messages and the push notification service."""

import pytest

from src.maintenance.config import MaintenanceJobType, MaintenanceState
from src.notifications.activities import (
    ActivityUser,
    MaterialAction,
    MaterialActivity,
    MaterialItem,
    StaffAssignmentActivity,
    TransferActivity,
    build_notification,
    build_transfer_out_notification,
    parse_activity,
)
from src.notifications.config import Platform, RecipientType, ResolutionSource, TokenFormat
from src.notifications.errors import InvalidRequestError
from src.notifications.gateway import MockPushGateway
from src.notifications.service import PushNotificationService, TransferNotificationResult
from src.settings import Settings

from conftest import CLIENT_ID, PROJECT_ID, expo_token

SOURCE_PROJECT = "project-yard"


def material_payload(**overrides):
    payload = {
        "clientId": CLIENT_ID,
        "projectId": PROJECT_ID,
        "activityKind": "material",
        "activity": "imported",
        "user": {"userId": "actor", "fullName": "Sam Site"},
        "materials": [{"name": "Rebar", "qnt": 5}, {"name": "Cement"}, {"name": "Sand"}],
        "projectName": "Tower A",
    }
    payload.update(overrides)
    return payload


def transfer_payload():
    return material_payload(
        activity="transferred",
        materials=[{"name": "Rebar"}, {"name": "Cement"}],
        transferDetails={
            "fromProject": {"id": SOURCE_PROJECT, "name": "Yard"},
            "toProject": {"id": PROJECT_ID, "name": "Tower A"},
        },
    )


@pytest.fixture
def service(store, directory, gateway, config):
    return PushNotificationService(store, directory, gateway, config=config)


@pytest.fixture
def staffed_service(service, directory):
    """Three project staff; staff-3 registered a malformed token."""
    for i in range(1, 4):
        directory.add_staff(CLIENT_ID, f"staff-{i}", project_ids=[PROJECT_ID])
    service.register_token("staff-1", expo_token("staff1token"), "ios")
    service.register_token("staff-2", expo_token("staff2token"), "android")
    service.register_token("staff-3", "bad!token!!", "ios")
    return service


class TestActivityParsing:

    def test_material(self):
        activity = parse_activity(material_payload(message="Delivered at gate 2"))
        assert isinstance(activity, MaterialActivity)
        assert activity.action == MaterialAction.IMPORTED
        assert activity.materials[0] == MaterialItem(name="Rebar", quantity=5)
        assert activity.message == "Delivered at gate 2"

    def test_transferred_material_becomes_transfer(self):
        activity = parse_activity(transfer_payload())
        assert isinstance(activity, TransferActivity)
        assert activity.from_project.id == SOURCE_PROJECT
        assert activity.project_id == PROJECT_ID

    def test_staff_assignment(self):
        activity = parse_activity({
            "clientId": CLIENT_ID,
            "projectId": PROJECT_ID,
            "activityKind": "staff_assignment",
            "user": {"userId": "admin-1"},
            "staffName": "Pat",
            "staffId": "staff-9",
        })
        assert isinstance(activity, StaffAssignmentActivity)
        assert activity.user.full_name == "Someone"

    @pytest.mark.parametrize("missing", ["clientId", "projectId", "activityKind", "user"])
    def test_missing_fields(self, missing):
        payload = material_payload()
        del payload[missing]
        with pytest.raises(InvalidRequestError):
            parse_activity(payload)

    def test_unknown_kind(self):
        with pytest.raises(InvalidRequestError):
            parse_activity(material_payload(activityKind="weather"))

    @pytest.mark.parametrize("overrides,field", [
        ({"user": "actor"}, "user"),
        ({"materials": "Rebar"}, "materials"),
        ({"activity": "transferred", "transferDetails": "yard"}, "transferDetails"),
        ({"activity": "transferred", "transferDetails": {"fromProject": "yard"}}, "fromProject"),
        ({"activity": "transferred", "transferDetails": {"toProject": 7}}, "toProject"),
    ])
    def test_malformed_shapes_rejected(self, overrides, field):
        with pytest.raises(InvalidRequestError) as exc_info:
            parse_activity(material_payload(**overrides))
        assert exc_info.value.field == field


class TestActivityMessages:

    def test_material_imported(self):
        notification = build_notification(parse_activity(material_payload()))
        assert notification.title == "📥 Materials Imported"
        assert notification.body == "Sam Site imported 3 materials: Rebar, Cement and 1 more in Tower A"
        assert notification.recipient_type == RecipientType.ALL
        assert notification.data["projectId"] == PROJECT_ID
        assert notification.data["action"] == "imported"

    def test_message_appended(self):
        notification = build_notification(parse_activity(material_payload(message="  check it ")))
        assert notification.body.endswith("\n💬 check it")

    def test_staff_changes_go_to_admins(self):
        activity = StaffAssignmentActivity(
            client_id=CLIENT_ID,
            project_id=PROJECT_ID,
            user=ActivityUser("admin-1", "Ada"),
            staff_name="Pat",
            project_name="Tower A",
        )
        notification = build_notification(activity)
        assert notification.recipient_type == RecipientType.ADMINS
        assert notification.body == "Pat assigned by Ada for Tower A"

    def test_transfer_messages(self):
        activity = parse_activity(transfer_payload())
        primary = build_notification(activity)
        assert primary.title == "🔄 Materials Transferred"
        assert primary.body == "Sam Site transferred 2 materials from Yard to Tower A"

        outbound = build_transfer_out_notification(activity)
        assert outbound.title == "📤 Materials Transferred Out"
        assert outbound.body == "Sam Site transferred out 2 materials to Tower A"
        assert outbound.data["projectId"] == SOURCE_PROJECT

    def test_no_transfer_out_within_same_project(self):
        activity = TransferActivity(
            client_id=CLIENT_ID,
            project_id=PROJECT_ID,
            user=ActivityUser("actor"),
            materials=(MaterialItem("Rebar"),),
        )
        assert build_transfer_out_notification(activity) is None


class TestTokenRegistration:

    def test_register(self, service):
        record, is_new = service.register_token("u1", expo_token("user1token"), "ios", device_id="d1")
        assert is_new
        assert record.platform == Platform.IOS
        assert record.token_format == TokenFormat.EXPO
        assert service.get_metrics().tokens_registered == 1

    def test_refresh_not_counted_as_new(self, service):
        service.register_token("u1", expo_token("user1token"), "ios")
        _, is_new = service.register_token("u1", expo_token("user1token"), "ios")
        assert not is_new
        assert service.get_metrics().tokens_registered == 1

    def test_malformed_token_stored(self, service):
        record, _ = service.register_token("u1", "bad!token!!", "android")
        assert record.is_active
        assert record.token_format == TokenFormat.UNKNOWN

    @pytest.mark.parametrize("user_id,token,platform", [
        ("", "ExponentPushToken[abcdefghij]", "ios"),
        ("u1", "", "ios"),
        ("u1", "ExponentPushToken[abcdefghij]", ""),
        ("u1", "ExponentPushToken[abcdefghij]", "blackberry"),
    ])
    def test_rejects_bad_input(self, service, user_id, token, platform):
        with pytest.raises(InvalidRequestError):
            service.register_token(user_id, token, platform)

    def test_deactivate_by_user(self, service):
        service.register_token("u1", expo_token("user1phone"), "ios")
        service.register_token("u1", expo_token("user1tablet"), "ios")
        assert service.deactivate_tokens(user_id="u1") == 2
        assert service.list_user_tokens("u1") == []
        assert service.get_metrics().tokens_deactivated == 2

    def test_deactivate_requires_target(self, service):
        with pytest.raises(InvalidRequestError):
            service.deactivate_tokens()


class TestNotifications:

    @pytest.mark.asyncio
    async def test_three_staff_one_malformed(self, staffed_service, gateway):
        result = await staffed_service.notify_activity_created(material_payload())

        assert result.recipient_count == 3
        assert result.delivered_count == 2
        assert result.failed_count == 1
        assert result.success
        assert len(gateway.sent_messages) == 2
        assert any("staff-3" in e for e in result.errors)

    @pytest.mark.asyncio
    async def test_performer_not_notified(self, staffed_service, gateway):
        payload = material_payload(user={"userId": "staff-1", "fullName": "Kim"})
        result = await staffed_service.notify_activity_created(payload)
        assert result.recipient_count == 2
        assert "staff-1" not in {m.user_id for m in gateway.sent_messages}

    @pytest.mark.asyncio
    async def test_deactivated_token_not_sent_from_cache(self, staffed_service, gateway):
        await staffed_service.notify_activity_created(material_payload())
        assert len(staffed_service.resolver.cache) == 1
        before = len(gateway.sent_messages)

        assert staffed_service.deactivate_tokens(token=expo_token("staff1token")) == 1
        assert len(staffed_service.resolver.cache) == 0
        result = await staffed_service.notify_activity_created(material_payload())

        sent = [m.to for m in gateway.sent_messages[before:]]
        assert sent == [expo_token("staff2token")]
        assert result.recipient_count == 2

    @pytest.mark.asyncio
    async def test_transfer_notifies_both_projects(self, staffed_service, directory, gateway):
        directory.add_staff(CLIENT_ID, "yard-1", project_ids=[SOURCE_PROJECT])
        staffed_service.register_token("yard-1", expo_token("yard1token"), "ios")

        result = await staffed_service.notify_transfer(transfer_payload())

        assert result.primary.recipient_count == 3
        assert result.secondary is not None
        assert result.secondary.recipient_count == 1
        assert result.success
        titles = {m.title for m in gateway.sent_messages}
        assert titles == {"🔄 Materials Transferred", "📤 Materials Transferred Out"}

    @pytest.mark.asyncio
    async def test_activity_created_covers_both_transfer_projects(self, staffed_service, directory):
        directory.add_staff(CLIENT_ID, "yard-1", project_ids=[SOURCE_PROJECT])
        staffed_service.register_token("yard-1", expo_token("yard1token"), "ios")

        result = await staffed_service.notify_activity_created(transfer_payload())

        assert isinstance(result, TransferNotificationResult)
        assert result.primary.recipient_count == 3
        assert result.secondary.recipient_count == 1
        assert result.recipient_count == 4
        assert result.delivered_count == 3

    @pytest.mark.asyncio
    async def test_transfer_out_failure_fails_result(self, staffed_service, directory, gateway):
        directory.add_staff(CLIENT_ID, "yard-1", project_ids=[SOURCE_PROJECT])
        yard_token = expo_token("yard1token")
        staffed_service.register_token("yard-1", yard_token, "ios")
        gateway.failing_tokens.add(yard_token)

        result = await staffed_service.notify_activity_created(transfer_payload())

        assert result.primary.success
        assert not result.secondary.success
        assert not result.success
        assert any("yard-1" in e for e in result.errors)
        assert result.to_dict()["success"] is False

    @pytest.mark.asyncio
    async def test_send_to_users(self, staffed_service, gateway):
        result = await staffed_service.send_to_users(["staff-1", "staff-2", "nobody"], "Hi", "Site closes at 4")
        assert result.recipient_count == 2
        assert result.delivered_count == 2
        assert gateway.sent_messages[0].title == "Hi"

    @pytest.mark.asyncio
    async def test_send_to_users_requires_text(self, service):
        with pytest.raises(InvalidRequestError):
            await service.send_to_users(["u1"], "", "")

    @pytest.mark.asyncio
    async def test_metrics_follow_deliveries(self, staffed_service):
        await staffed_service.notify_activity_created(material_payload())
        snapshot = staffed_service.get_metrics()
        assert snapshot.notifications_sent == 2
        assert snapshot.notifications_failed == 1
        staffed_service.reset_metrics()
        assert staffed_service.get_metrics().notifications_sent == 0


class TestRecipientsAndMaintenance:

    def test_resolve_and_clear_cache(self, staffed_service):
        first = staffed_service.resolve_recipients(CLIENT_ID, PROJECT_ID, "staff")
        assert first.source == ResolutionSource.PRIMARY
        assert staffed_service.resolve_recipients(CLIENT_ID, PROJECT_ID, "staff").source == ResolutionSource.CACHE
        assert staffed_service.clear_recipient_cache(CLIENT_ID) == 1

    def test_resolve_rejects_bad_type(self, staffed_service):
        with pytest.raises(InvalidRequestError):
            staffed_service.resolve_recipients(CLIENT_ID, PROJECT_ID, "visitors")

    def test_run_maintenance(self, staffed_service):
        job = staffed_service.run_maintenance_job("full")
        assert job is not None
        assert job.health_refresh.result["tokens_refreshed"] == 3
        assert staffed_service.run_maintenance_job(MaintenanceJobType.FULL) is None
        assert staffed_service.run_maintenance_job("cleanup", force=True) is not None
        assert staffed_service.get_maintenance_status().state == MaintenanceState.COMPLETED_SUCCESS

    def test_token_statistics(self, staffed_service):
        stats = staffed_service.get_token_statistics()
        assert stats["overview"]["active_tokens"] == 3
        assert stats["by_platform"] == {"ios": 2, "android": 1}

    @pytest.mark.asyncio
    async def test_health_check(self, staffed_service):
        health = await staffed_service.health_check()
        assert health["status"] == "ok"
        assert health["components"]["maintenance"] == "IDLE"


class TestFromSettings:

    def test_in_memory_by_default(self):
        service = PushNotificationService.from_settings(
            Settings(use_database=False, failure_deactivation_threshold=3),
            gateway=MockPushGateway(),
        )
        assert service.store.failure_threshold == 3
        assert service.scheduler.config.interval_hours == 24

    def test_sql_store(self):
        service = PushNotificationService.from_settings(
            Settings(use_database=True, database_url="sqlite://"),
            gateway=MockPushGateway(),
        )
        service.register_token("u1", expo_token("user1token"), "ios")
        assert service.store.count() == 1
