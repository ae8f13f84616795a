import os

from .gateway import AIGatewayClient
from .late import LatePublisher
from .pipeline.providers import Collaborators
from .pipeline.storage import R2ObjectStore, r2_configured
from .shotstack import ShotstackRenderer


class ProviderFactory:
    @staticmethod
    def get_renderer():
        # Without a key the export stage leaves the render pending
        if os.environ.get("SHOTSTACK_API_KEY"):
            return ShotstackRenderer(api_key=os.environ["SHOTSTACK_API_KEY"])
        return None

    @staticmethod
    def get_publisher():
        if os.environ.get("LATE_API_KEY"):
            return LatePublisher(api_key=os.environ["LATE_API_KEY"])
        return None

    @staticmethod
    def get_object_store():
        if r2_configured():
            return R2ObjectStore()
        return None

    @staticmethod
    def build_collaborators() -> Collaborators:
        gateway = AIGatewayClient()
        return Collaborators(
            text=gateway,
            images=gateway,
            clips=gateway,
            speech=gateway,
            music=gateway,
            sound_effects=gateway,
            object_store=ProviderFactory.get_object_store(),
            renderer=ProviderFactory.get_renderer(),
            publisher=ProviderFactory.get_publisher(),
        )
