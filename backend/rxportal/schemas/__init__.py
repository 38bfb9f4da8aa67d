from rxportal.schemas.refill import (
    CreateRefillRequest, RespondRefillRequest, RefillResponse,
    RefillListResponse, RefillCountResponse, MedicationItem,
)
from rxportal.schemas.notification import (
    NotificationOut, NotificationListResponse, UnreadCountResponse,
)
