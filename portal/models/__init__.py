# Import all models to ensure they're registered with SQLAlchemy
from portal.database import Base
from portal.models.announcements import Announcement
