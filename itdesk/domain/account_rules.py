from __future__ import annotations

from itdesk.domain.models import AccountRecord, UserUpdate


def is_self_edit(current_user_id: str | None, target: AccountRecord) -> bool:
    return current_user_id is not None and current_user_id == target.id


def critical_changes(target: AccountRecord, changes: UserUpdate) -> list[str]:
    """Fields whose change invalidates the editor's own server credential."""
    changed: list[str] = []
    if changes.email is not None and changes.email.strip() != target.email:
        changed.append("email")
    if changes.password:
        changed.append("password")
    if changes.role_id is not None and changes.role_id != target.role_id:
        changed.append("role_id")
    if changes.active is not None and changes.active != target.active:
        changed.append("active")
    return changed


def requires_forced_logout(current_user_id: str | None, target: AccountRecord, changes: UserUpdate) -> bool:
    if not is_self_edit(current_user_id, target):
        return False
    return bool(critical_changes(target, changes))


def would_lock_out_self(current_user_id: str | None, target: AccountRecord, changes: UserUpdate) -> bool:
    return is_self_edit(current_user_id, target) and changes.active is False
