"""
EVM Presale Client Package Initialization

This package provides a client for a fixed-price token presale on an
EVM-compatible chain, exposed through the Model Context Protocol (MCP). It
drives the presale contract through the user's own wallet: the client never
holds keys, every transaction is signed by the wallet.

The package includes:
- Sale configuration loading and validation
- A phase timeline with countdown and rate resolution
- Wallet connection through an injected or a remote signing capability
- Serialized approve / buy / claim / finalize operations
- Global sale stats and a vesting vault viewer
- Custom error handling
- MCP server and a read-only Flask status API
"""
