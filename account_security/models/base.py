from sqlalchemy.orm import declarative_base

# Create declarative base
Base = declarative_base()
