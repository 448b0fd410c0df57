# bottle-launch operations: external tool wrappers, orchestrators, CLI and workers.
