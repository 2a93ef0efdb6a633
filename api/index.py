from mangum import Mangum

from trade.api import create_app
from trade.config import get_settings

settings = get_settings().model_copy(update={"api_root_path": "/api"})

app = create_app(settings)

handler = Mangum(app)
