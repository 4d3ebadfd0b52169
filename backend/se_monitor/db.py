"""
Database client configuration.
Uses Supabase (PostgREST) for listings, linked user emails, the contact queue
and the inbound email audit log.
"""

import os
from supabase import create_client, Client
from dotenv import load_dotenv

load_dotenv()

SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_SERVICE_KEY = os.getenv("SUPABASE_SERVICE_KEY")

if not SUPABASE_URL:
    raise ValueError("SUPABASE_URL must be set in environment variables")

# Admin client for service-level operations (bypasses RLS). Webhook calls carry
# no end-user session, so every ingestion read and write goes through it.
supabase_admin: Client = create_client(SUPABASE_URL, SUPABASE_SERVICE_KEY) if SUPABASE_SERVICE_KEY else None
