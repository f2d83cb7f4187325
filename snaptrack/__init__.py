"""Top-level package for the SnapTrack receipt capture pipeline.

This package contains the client-side pipeline that turns a photo of a
receipt into a saved expense: an authenticated HTTP gateway, a
normaliser for the extraction service's response shapes, a stage
progress projector, a durable offline queue and the capture session
controller that orchestrates them. Collaborators such as the auth
provider, connectivity oracle and telemetry sink are injected so that
individual pieces can be swapped or faked independently.

A ready-wired pipeline can be built with::

    from snaptrack.pipeline import CapturePipeline

    pipeline = CapturePipeline.from_settings(auth=my_auth_provider)
    session = pipeline.new_session()
"""

__all__: list[str] = []
