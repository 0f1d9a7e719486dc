from sqlmodel import Session


class BaseRepository:
    def __init__(self, session: Session):
        self.session = session

    def save(self, obj):
        self.session.add(obj)
        self.session.commit()
        self.session.refresh(obj)
        return obj
