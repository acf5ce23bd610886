from .interfaces import EntityKind, IHypervisorGateway
