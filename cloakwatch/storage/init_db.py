"""
Database initialization script
Run this to create the CloakWatch schema
"""
from cloakwatch.storage.database import init_database, get_database_url

if __name__ == '__main__':
    print(f"Initializing database at {get_database_url()}...")
    init_database()
    print("Database initialization complete!")
