import logging

from ordering.auth import Principal
from ordering.errors import StoreClosed, Unauthorized
from ordering.models import STORE_OPEN_KEY

logger = logging.getLogger(__name__)


class StoreHoursGate:
    """Admission control for new orders, backed by the ``is_store_open`` setting.

    Nothing is cached: every check reads the record store, so a flip by staff
    applies to the very next order.
    """

    def __init__(self, store):
        self._store = store

    def is_admissible(self) -> bool:
        value = self._store.get_setting(STORE_OPEN_KEY)
        if value is None:
            logger.warning("No %s setting found, treating store as closed", STORE_OPEN_KEY)
            return False
        return value.strip().lower() == "true"

    def require_open(self) -> None:
        if not self.is_admissible():
            raise StoreClosed()

    def set_open(self, principal: Principal, is_open: bool) -> bool:
        if not principal.is_staff:
            raise Unauthorized()
        self._store.set_setting(STORE_OPEN_KEY, "true" if is_open else "false")
        logger.info("Store marked %s by %s", "open" if is_open else "closed", principal.user_id)
        return is_open
