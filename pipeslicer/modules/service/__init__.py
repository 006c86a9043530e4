from .registry_service import RegistryService
