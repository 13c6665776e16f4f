from .documents import DocumentStore, InMemoryDocumentStore, SqlDocumentStore, select_store

__all__ = ["DocumentStore", "InMemoryDocumentStore", "SqlDocumentStore", "select_store"]
