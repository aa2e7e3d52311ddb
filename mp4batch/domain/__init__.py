"""
Domain package: plain data describing what to encode and how it went.

- plan.py: EncodePlan and its video/audio settings.
- stage.py: PipelineStage, Pipeline and JobResult.
- exceptions.py: the mp4batch exception hierarchy.
"""
