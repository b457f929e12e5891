# Models package — import all models here so Alembic can discover them.

from dealflow.models.stage import Stage  # noqa: F401
from dealflow.models.deal import Deal  # noqa: F401
from dealflow.models.deal_activity import DealActivity  # noqa: F401
