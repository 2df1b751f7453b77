import json
import logging
from typing import Any, Dict, List, Optional

from lendingdesk.database import get_db_connection

logger = logging.getLogger(__name__)


def _dump(state: Any) -> Optional[str]:
    if state is None:
        return None
    return json.dumps(state, ensure_ascii=False, default=str)


class AuditSink:
    """Writes audit entries to the ``logs`` table.

    Entries are written on a fresh connection after the business transaction
    has committed. A failure here is logged and dropped; it never reaches
    the caller.
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file

    def record(
        self,
        actor_id: Optional[int],
        action: str,
        entity: str,
        entity_id: Optional[int],
        before: Any = None,
        after: Any = None,
        description: Optional[str] = None,
    ) -> None:
        try:
            conn = get_db_connection(self.db_file)
            try:
                conn.execute(
                    """
                    INSERT INTO logs (actor_id, action, entity, entity_id, description, before_state, after_state)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (actor_id, action, entity, entity_id, description, _dump(before), _dump(after)),
                )
            finally:
                conn.close()
        except Exception:
            logger.exception("Audit entry %s on %s %s was not recorded", action, entity, entity_id)


def list_logs(conn, limit: int = 100) -> List[Dict[str, Any]]:
    rows = conn.execute(
        """
        SELECT id, actor_id, action, entity, entity_id, description, before_state, after_state, created_at
        FROM logs ORDER BY id DESC LIMIT ?
        """,
        (limit,),
    ).fetchall()
    entries = []
    for r in rows:
        entry = dict(r)
        entry["before_state"] = json.loads(r["before_state"]) if r["before_state"] else None
        entry["after_state"] = json.loads(r["after_state"]) if r["after_state"] else None
        entries.append(entry)
    return entries
