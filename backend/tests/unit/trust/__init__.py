"""
sshtrust Unit Tests

Test Modules:
    test_key_parser.py:
        - parse_key_line with and without options/comment
        - flatten_key_text joining rule
        - read_key_file error handling
    test_models.py:
        - key_path derivation, CatalogIdentifier parsing, fingerprints
    test_key_store.py:
        - Idempotent ensure_key, refusal to overwrite private keys
        - ssh-keygen command construction and failure mapping
    test_catalog.py:
        - Memory, file and SQLite backends, disjoint concurrent publishes
    test_distributor.py:
        - Rendering, selector matching, absent markers
    test_applier.py:
        - Managed line editing of authorized_keys / known_hosts
    test_orchestrator.py:
        - Stage ordering, failure isolation, fixpoint convergence
    test_config.py:
        - Settings validation and YAML topology loading
    test_cli.py:
        - click commands via CliRunner
"""
