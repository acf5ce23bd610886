from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, scoped_session, sessionmaker

from vmlifecycle.config import settings

# 데이터베이스 연결 문자열은 설정(DATABASE_URL)에서 읽어옵니다.
SQLALCHEMY_DATABASE_URL = settings.DATABASE_URL

# connect_args는 SQLite에서만 필요합니다. (thread-safe 설정)
connect_args = {"check_same_thread": False} if SQLALCHEMY_DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args=connect_args)

# autocommit=False, autoflush=False로 설정하여, 명시적으로 commit을 호출해야 DB에 반영됩니다.
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# 요청 스레드와 스위퍼 스레드가 각자의 세션을 쓰도록 스레드 로컬 세션을 제공합니다.
# 작업 단위가 끝나면 ScopedSession.remove()로 정리해야 합니다.
ScopedSession = scoped_session(SessionLocal)

# 모든 모델 클래스가 상속받을 Base 클래스
Base = declarative_base()
