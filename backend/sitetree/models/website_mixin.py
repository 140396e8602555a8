from sitetree.extensions import db

class WebsiteMixin:
    # Websites live outside this service; the id is only a partition key
    website_id = db.Column(
        db.String(36),
        nullable=False,
        index=True
    )
