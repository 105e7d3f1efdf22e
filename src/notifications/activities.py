"""Site activity variants and their notification messages.

Collaborating routes (material imports and usage, transfers, staff
changes, generic project activity) hand over raw payloads. Each payload
becomes one activity variant, and each variant has one pure builder that
decides the message text and which part of the client organisation to
notify.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Union

from src.notifications.config import RecipientType
from src.notifications.errors import InvalidRequestError

MAX_LISTED_MATERIALS = 2


class MaterialAction(Enum):
    IMPORTED = "imported"
    USED = "used"
    TRANSFERRED = "transferred"
    OTHER = "other"


class ActivityKind(Enum):
    MATERIAL = "material"
    TRANSFER = "transfer"
    STAFF_ASSIGNMENT = "staff_assignment"
    STAFF_REMOVAL = "staff_removal"
    GENERAL = "general"


CATEGORY_TITLES = {
    "project": "🏗️ Project Update",
    "section": "📐 Section Update",
    "mini_section": "🔧 Mini Section Update",
    "staff": "👥 Staff Update",
    "labor": "👷 Labor Update",
    "material": "📦 Material Update",
}
DEFAULT_CATEGORY_TITLE = "📋 Activity Update"

# Preposition joining the body to the project name, per category
_CATEGORY_PREPOSITION = {"staff": "for"}


@dataclass(frozen=True)
class ActivityUser:
    """The user who performed the activity."""

    user_id: str
    full_name: str = "Someone"


@dataclass(frozen=True)
class MaterialItem:
    name: str
    quantity: Optional[float] = None
    unit: Optional[str] = None


@dataclass(frozen=True)
class ProjectRef:
    id: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class MaterialActivity:
    client_id: str
    project_id: str
    user: ActivityUser
    action: MaterialAction = MaterialAction.OTHER
    materials: tuple[MaterialItem, ...] = ()
    project_name: Optional[str] = None
    message: Optional[str] = None
    activity_id: Optional[str] = None


@dataclass(frozen=True)
class TransferActivity:
    """Materials moved between two projects of one client.

    ``project_id`` is the destination project.
    """

    client_id: str
    project_id: str
    user: ActivityUser
    from_project: ProjectRef = field(default_factory=ProjectRef)
    to_project: ProjectRef = field(default_factory=ProjectRef)
    materials: tuple[MaterialItem, ...] = ()
    description: Optional[str] = None
    message: Optional[str] = None
    activity_id: Optional[str] = None


@dataclass(frozen=True)
class StaffAssignmentActivity:
    client_id: str
    project_id: str
    user: ActivityUser
    staff_name: str = "A staff member"
    staff_id: Optional[str] = None
    project_name: Optional[str] = None
    message: Optional[str] = None
    activity_id: Optional[str] = None


@dataclass(frozen=True)
class StaffRemovalActivity:
    client_id: str
    project_id: str
    user: ActivityUser
    staff_name: str = "A staff member"
    staff_id: Optional[str] = None
    project_name: Optional[str] = None
    message: Optional[str] = None
    activity_id: Optional[str] = None


@dataclass(frozen=True)
class GeneralActivity:
    client_id: str
    project_id: str
    user: ActivityUser
    category: str = "general"
    description: str = "Activity recorded"
    activity_type: Optional[str] = None
    action: Optional[str] = None
    project_name: Optional[str] = None
    message: Optional[str] = None
    activity_id: Optional[str] = None


Activity = Union[
    MaterialActivity,
    TransferActivity,
    StaffAssignmentActivity,
    StaffRemovalActivity,
    GeneralActivity,
]


@dataclass(frozen=True)
class ActivityNotification:
    """Message text plus the audience for one activity."""

    title: str
    body: str
    data: dict = field(default_factory=dict)
    recipient_type: RecipientType = RecipientType.ALL


def _plural(count: int) -> str:
    return f"{count} material{'s' if count > 1 else ''}"


def _material_summary(materials: tuple[MaterialItem, ...]) -> str:
    names = ", ".join(m.name for m in materials[:MAX_LISTED_MATERIALS]) or "materials"
    if len(materials) > MAX_LISTED_MATERIALS:
        names += f" and {len(materials) - MAX_LISTED_MATERIALS} more"
    return names


def _with_message(body: str, message: Optional[str]) -> str:
    if message and message.strip():
        return f"{body}\n💬 {message.strip()}"
    return body


def _base_data(activity: Activity, category: str, activity_type: str, action: Optional[str]) -> dict:
    return {
        "activityId": activity.activity_id,
        "projectId": activity.project_id,
        "clientId": activity.client_id,
        "activityType": activity_type,
        "category": category,
        "action": action,
        "route": "notification",
    }


def _build_material(activity: MaterialActivity) -> ActivityNotification:
    who = activity.user.full_name
    count = len(activity.materials)
    summary = _material_summary(activity.materials)

    if activity.action == MaterialAction.IMPORTED:
        title = "📥 Materials Imported"
        body = f"{who} imported {_plural(count)}: {summary}"
    elif activity.action == MaterialAction.USED:
        title = "🔨 Materials Used"
        body = f"{who} used {_plural(count)}: {summary}"
    elif activity.action == MaterialAction.TRANSFERRED:
        title = "🔄 Materials Transferred"
        body = f"{who} transferred {_plural(count)}: {summary}"
    else:
        title = "📦 Material Activity"
        body = f"{who} performed material activity: {summary}"

    if activity.project_name and activity.action != MaterialAction.TRANSFERRED:
        body += f" in {activity.project_name}"

    return ActivityNotification(
        title=title,
        body=_with_message(body, activity.message),
        data=_base_data(activity, "material", "material_activity", activity.action.value),
        recipient_type=RecipientType.ALL,
    )


def _transfer_what(activity: TransferActivity) -> str:
    if activity.materials:
        return _plural(len(activity.materials))
    return activity.description or "materials"


def _transfer_body(activity: TransferActivity) -> str:
    who = activity.user.full_name
    what = _transfer_what(activity)
    source = activity.from_project.name or "Unknown"
    destination = activity.to_project.name or "Unknown"
    return f"{who} transferred {what} from {source} to {destination}"


def _build_transfer(activity: TransferActivity) -> ActivityNotification:
    data = _base_data(activity, "material", "material_activity", MaterialAction.TRANSFERRED.value)
    data["fromProjectId"] = activity.from_project.id
    data["toProjectId"] = activity.to_project.id
    return ActivityNotification(
        title="🔄 Materials Transferred",
        body=_with_message(_transfer_body(activity), activity.message),
        data=data,
        recipient_type=RecipientType.ALL,
    )


def build_transfer_out_notification(activity: TransferActivity) -> Optional[ActivityNotification]:
    """Secondary message for the source project of a transfer.

    None when the source project is unknown or is the destination itself.
    """
    source_id = activity.from_project.id
    if not source_id or source_id == activity.project_id:
        return None
    primary = _build_transfer(activity)
    destination = activity.to_project.name or "Unknown"
    body = f"{activity.user.full_name} transferred out {_transfer_what(activity)} to {destination}"
    data = dict(primary.data)
    data["projectId"] = source_id
    return ActivityNotification(
        title="📤 Materials Transferred Out",
        body=_with_message(body, activity.message),
        data=data,
        recipient_type=primary.recipient_type,
    )


def _build_staff_assignment(activity: StaffAssignmentActivity) -> ActivityNotification:
    body = f"{activity.staff_name} assigned by {activity.user.full_name}"
    if activity.project_name:
        body += f" for {activity.project_name}"
    data = _base_data(activity, "staff", "staff_assigned", "assign")
    data["staffId"] = activity.staff_id
    return ActivityNotification(
        title=CATEGORY_TITLES["staff"],
        body=_with_message(body, activity.message),
        data=data,
        recipient_type=RecipientType.ADMINS,
    )


def _build_staff_removal(activity: StaffRemovalActivity) -> ActivityNotification:
    body = f"{activity.staff_name} removed by {activity.user.full_name}"
    if activity.project_name:
        body += f" from {activity.project_name}"
    data = _base_data(activity, "staff", "staff_removed", "remove")
    data["staffId"] = activity.staff_id
    return ActivityNotification(
        title=CATEGORY_TITLES["staff"],
        body=_with_message(body, activity.message),
        data=data,
        recipient_type=RecipientType.ADMINS,
    )


def _build_general(activity: GeneralActivity) -> ActivityNotification:
    who = activity.user.full_name
    project = activity.project_name
    title = CATEGORY_TITLES.get(activity.category, DEFAULT_CATEGORY_TITLE)

    if activity.category == "project" and activity.activity_type == "project_created":
        body = f'New project "{project or "Unknown"}" created by {who}'
    elif activity.category == "project" and activity.activity_type == "project_updated":
        body = f'Project "{project or "Unknown"}" updated by {who}'
    else:
        body = f"{activity.description} by {who}"
        if project and activity.category != "project":
            body += f" {_CATEGORY_PREPOSITION.get(activity.category, 'in')} {project}"

    return ActivityNotification(
        title=title,
        body=_with_message(body, activity.message),
        data=_base_data(activity, activity.category, activity.activity_type, activity.action),
        recipient_type=RecipientType.ALL,
    )


_BUILDERS: dict[type, Callable[[Any], ActivityNotification]] = {
    MaterialActivity: _build_material,
    TransferActivity: _build_transfer,
    StaffAssignmentActivity: _build_staff_assignment,
    StaffRemovalActivity: _build_staff_removal,
    GeneralActivity: _build_general,
}


def build_notification(activity: Activity) -> ActivityNotification:
    """Title, body, data and audience for an activity."""
    builder = _BUILDERS.get(type(activity))
    if builder is None:
        raise InvalidRequestError(f"Unsupported activity type: {type(activity).__name__}")
    return builder(activity)


# ── Raw payload parsing ─────────────────────────────────────────────


def _require(payload: dict, *names: str) -> str:
    for name in names:
        value = payload.get(name)
        if value:
            return str(value)
    raise InvalidRequestError(f"{names[0]} is required", field=names[0])


def _parse_user(payload: dict) -> ActivityUser:
    raw = payload.get("user") or {}
    if not isinstance(raw, dict):
        raise InvalidRequestError("user must be an object", field="user")
    user_id = raw.get("userId") or raw.get("user_id")
    if not user_id:
        raise InvalidRequestError("user.userId is required", field="user")
    return ActivityUser(
        user_id=str(user_id),
        full_name=raw.get("fullName") or raw.get("full_name") or "Someone",
    )


def _parse_materials(payload: dict) -> tuple[MaterialItem, ...]:
    raw_items = payload.get("materials") or []
    if not isinstance(raw_items, list):
        raise InvalidRequestError("materials must be a list", field="materials")
    items = []
    for raw in raw_items:
        if isinstance(raw, str):
            items.append(MaterialItem(name=raw))
        elif isinstance(raw, dict):
            items.append(MaterialItem(
                name=raw.get("name") or "material",
                quantity=raw.get("qnt", raw.get("quantity")),
                unit=raw.get("unit"),
            ))
    return tuple(items)


def _parse_project_ref(raw: Optional[dict], field_name: str) -> ProjectRef:
    raw = raw or {}
    if not isinstance(raw, dict):
        raise InvalidRequestError(f"transferDetails.{field_name} must be an object", field=field_name)
    return ProjectRef(id=raw.get("id"), name=raw.get("name"))


def parse_activity(payload: dict) -> Activity:
    """Turn a collaborator payload into an activity variant.

    Accepts the camelCase keys the site routes emit. The variant is
    chosen by ``activityKind``; material payloads whose action is
    ``transferred`` and that carry ``transferDetails`` become transfers.
    """
    if not isinstance(payload, dict):
        raise InvalidRequestError("Activity payload must be an object")

    client_id = _require(payload, "clientId", "client_id")
    project_id = _require(payload, "projectId", "project_id")
    raw_kind = payload.get("activityKind") or payload.get("activity_kind")
    if not raw_kind:
        raise InvalidRequestError("activityKind is required", field="activityKind")
    try:
        kind = ActivityKind(raw_kind)
    except ValueError:
        raise InvalidRequestError(f"Unknown activityKind: {raw_kind}", field="activityKind")

    user = _parse_user(payload)
    common = {
        "client_id": client_id,
        "project_id": project_id,
        "user": user,
        "message": payload.get("message"),
        "activity_id": payload.get("activityId") or payload.get("_id"),
    }
    project_name = payload.get("projectName")
    transfer = payload.get("transferDetails")
    if transfer is not None and not isinstance(transfer, dict):
        raise InvalidRequestError("transferDetails must be an object", field="transferDetails")

    if kind == ActivityKind.MATERIAL:
        try:
            action = MaterialAction(payload.get("activity") or "other")
        except ValueError:
            action = MaterialAction.OTHER
        if action == MaterialAction.TRANSFERRED and transfer:
            kind = ActivityKind.TRANSFER
        else:
            return MaterialActivity(
                action=action,
                materials=_parse_materials(payload),
                project_name=project_name,
                **common,
            )

    if kind == ActivityKind.TRANSFER:
        transfer = transfer or {}
        return TransferActivity(
            from_project=_parse_project_ref(transfer.get("fromProject"), "fromProject"),
            to_project=_parse_project_ref(transfer.get("toProject"), "toProject"),
            materials=_parse_materials(payload),
            description=payload.get("description"),
            **common,
        )

    if kind in (ActivityKind.STAFF_ASSIGNMENT, ActivityKind.STAFF_REMOVAL):
        cls = StaffAssignmentActivity if kind == ActivityKind.STAFF_ASSIGNMENT else StaffRemovalActivity
        return cls(
            staff_name=payload.get("staffName") or "A staff member",
            staff_id=payload.get("staffId"),
            project_name=project_name,
            **common,
        )

    return GeneralActivity(
        category=payload.get("category") or "general",
        description=payload.get("description") or "Activity recorded",
        activity_type=payload.get("activityType"),
        action=payload.get("action"),
        project_name=project_name,
        **common,
    )
