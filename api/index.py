from mangum import Mangum
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from chipledger.api import create_app
from chipledger.config import Settings

app = create_app(settings=Settings.from_env(), root_path="/api")

handler = Mangum(app)
