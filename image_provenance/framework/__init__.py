"""Provenance building blocks.

- `image_provenance.framework.config`: typed config parsed from YAML mappings
- `image_provenance.framework.git` / `tagging`: which revision is built and what it is called
- `image_provenance.framework.references`: `repo[:tag][@digest]` parsing
- `image_provenance.framework.dockerfile` / `findings`: pinning checks on build inputs
- `image_provenance.framework.docker` / `kubernetes`: the build and the digest-pinned descriptor
- `image_provenance.framework.artifacts`: build/deploy records and ledgers
"""
