from flint.services.sync.account_sync import AccountSyncService, HoldingsSyncResult, SyncResult
from flint.services.sync.teller_sync import TellerSyncService

__all__ = ["AccountSyncService", "HoldingsSyncResult", "SyncResult", "TellerSyncService"]
