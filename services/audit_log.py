from __future__ import annotations

from typing import Any
from psycopg2.extras import Json

from services.observability import get_request_id


def write_audit_log(
    conn,
    *,
    actor_user_id: str,
    action: str,
    target_id: str | None,
    metadata: dict[str, Any] | None = None,
) -> None:
    payload = dict(metadata or {})
    request_id = get_request_id()
    if request_id and "request_id" not in payload:
        payload["request_id"] = request_id

    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO app.audit_log (actor_user_id, action, target_id, metadata)
            VALUES (%s, %s, %s, %s::jsonb);
            """,
            (
                str(actor_user_id),
                action,
                target_id,
                Json(payload),
            ),
        )
