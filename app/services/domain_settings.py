from sqlalchemy.orm import Session

from app.models.domain_settings import DomainSetting, SettingDomain, SettingValueType


class DomainSettings:
    def __init__(self, domain: SettingDomain) -> None:
        self.domain = domain

    def values(self, db: Session) -> dict[str, str]:
        """Active settings for this domain as ``{key: text}``; empty values skipped."""
        rows = (
            db.query(DomainSetting)
            .filter(DomainSetting.domain == self.domain)
            .filter(DomainSetting.is_active.is_(True))
            .all()
        )
        result: dict[str, str] = {}
        for row in rows:
            if row.value_text:
                result[row.key] = row.value_text
            elif row.value_json is not None:
                result[row.key] = str(row.value_json)
        return result

    def ensure_by_key(
        self,
        db: Session,
        key: str,
        value_type: SettingValueType,
        value_text: str | None = None,
        value_json: dict | bool | int | None = None,
        is_secret: bool = False,
    ) -> DomainSetting:
        existing = (
            db.query(DomainSetting)
            .filter(DomainSetting.domain == self.domain)
            .filter(DomainSetting.key == key)
            .first()
        )
        if existing:
            return existing
        setting = DomainSetting(
            domain=self.domain,
            key=key,
            value_type=value_type,
            value_text=value_text,
            value_json=value_json,
            is_secret=is_secret,
            is_active=True,
        )
        db.add(setting)
        db.flush()
        return setting


notification_settings = DomainSettings(SettingDomain.notification)
scheduler_settings = DomainSettings(SettingDomain.scheduler)
