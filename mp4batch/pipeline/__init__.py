"""
This package contains the batch pipeline of mp4batch.

The pipeline orchestrates a whole invocation: it parses the encode spec,
discovers scripts, builds one process pipeline per plan, runs them concurrently
while sharing lossless intermediates, and reports per-plan results.
"""
