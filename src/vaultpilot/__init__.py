"""vaultpilot - threshold-unseal bootstrap for an HA Vault cluster on Consul.

vaultpilot stands up a fixed-size cluster of Vault nodes backed by Consul,
initializes the vault so that a quorum of independent operators is needed
to unseal it, and upgrades inter-node traffic to TLS and encrypted gossip
once the cluster is healthy.

Key modules:

- :mod:`vaultpilot.core` - splitter, key distribution, unseal, secure rollout, bootstrap
- :mod:`vaultpilot.engine` - secret-storage engine clients (Vault HTTP API, in-memory)
- :mod:`vaultpilot.consensus` - Consul status, KV and lock client
- :mod:`vaultpilot.transport` - file delivery and restart on cluster nodes
- :mod:`vaultpilot.crypto` - recipient identities, share decryption, TLS material
- :mod:`vaultpilot.config` - YAML configuration
"""

__version__ = "0.1.0"
