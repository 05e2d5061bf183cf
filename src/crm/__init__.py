from src.crm.client import CrmClient, InMemoryCrmClient

__all__ = ["CrmClient", "InMemoryCrmClient"]
