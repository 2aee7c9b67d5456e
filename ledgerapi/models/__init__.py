from .base import Base
from .user import User
from .ledger import AccountBalance, LedgerEntry, LedgerKind
from .rewards import (
    CheckInRecord,
    MilestoneClaim,
    CheckInRewardConfig,
    ReferralClaim,
    WeeklyRewardLog,
)
from .giftcode import Giftcode, GiftcodeUsage
from .topup import CreditPackage, Promotion, TopupTransaction, TopupStatusEnum
from .credential import ApiCredential, CredentialStatusEnum
from .generation import GenerationJob, GenerationJobStatusEnum
from .notification import Notification
