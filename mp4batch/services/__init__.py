"""
Services package for mp4batch.

A service here performs one well-defined step of turning scripts into encoded
files, between the batch pipeline (when and in what order) and the domain
models (what is being encoded):

- **Spec parsing (`spec_parser`):** turns the `-f` option string into EncodePlans.
- **Cache keys (`cache_key`):** decides which plans can share one decode pass.
- **Pipeline building (`pipeline_builder`, `encoder_args`, `hdr`):** turns a
  plan into the external commands that implement it.
- **Execution (`executor`, `interrupt`):** runs those commands as child
  processes and tears them down on failure or interruption.
- **File discovery (`file_discovery`):** finds scripts and their source media.
- **Logging (`logging_service`):** writes the per-run success and error logs.
"""
