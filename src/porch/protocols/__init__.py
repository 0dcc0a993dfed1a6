"""Built-in protocol definitions, one ``<name>/protocol.json`` per protocol."""
