#!/usr/bin/env python3
"""Create database tables for the field service fulfillment service."""

import os
import psycopg2
from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")

SQL = """
-- 1. fulfillment_requests: one row per payment, the idempotency record
CREATE TABLE IF NOT EXISTS fulfillment_requests (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    payment_intent_id VARCHAR(255) NOT NULL UNIQUE,
    stripe_session_id VARCHAR(255),
    status VARCHAR(20) NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'confirmed', 'failed')),
    customer_name VARCHAR(255),
    customer_email VARCHAR(255),
    customer_phone VARCHAR(50),
    address TEXT,
    city VARCHAR(100),
    state VARCHAR(50),
    zip_code VARCHAR(20),
    requested_service VARCHAR(255),
    preferred_date DATE,
    preferred_time_slot VARCHAR(20),
    special_instructions TEXT,
    booking_source VARCHAR(50),
    acquisition_channel VARCHAR(100),
    referral_code VARCHAR(100),
    product_name VARCHAR(255),
    payment_amount INTEGER,
    payment_status VARCHAR(50),
    request_payload JSONB NOT NULL DEFAULT '{}'::jsonb,
    crm_customer_id BIGINT,
    crm_location_id BIGINT,
    crm_job_id BIGINT,
    crm_job_number VARCHAR(50),
    crm_appointment_id BIGINT,
    last_error TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    booked_at TIMESTAMPTZ,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_fulfillment_requests_status ON fulfillment_requests(status, updated_at);

-- 2. tracking_numbers: acquisition channel -> CRM campaign
CREATE TABLE IF NOT EXISTS tracking_numbers (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    channel_key VARCHAR(100) NOT NULL UNIQUE,
    phone_number VARCHAR(50),
    crm_campaign_id BIGINT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- 3. inbound_document_dispatches: routed email content for downstream processors
CREATE TABLE IF NOT EXISTS inbound_document_dispatches (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    kind VARCHAR(30) NOT NULL
        CHECK (kind IN ('job_completion', 'invoice', 'estimate', 'customer_data')),
    reference_number VARCHAR(100),
    sender VARCHAR(255),
    subject TEXT,
    filename VARCHAR(255),
    size INTEGER,
    sha256 VARCHAR(64),
    content_b64 TEXT,
    processed_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_inbound_document_dispatches_pending
    ON inbound_document_dispatches(kind, created_at) WHERE processed_at IS NULL;

-- 4. observability_metric_snapshots
CREATE TABLE IF NOT EXISTS observability_metric_snapshots (
    id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    source VARCHAR(100) NOT NULL,
    request_id VARCHAR(255),
    counters JSONB NOT NULL DEFAULT '{}'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
"""

SEED_TRACKING_NUMBERS = """
INSERT INTO tracking_numbers (channel_key)
VALUES ('website')
ON CONFLICT (channel_key) DO NOTHING;
"""

def main():
    print("Connecting to database...")
    conn = psycopg2.connect(DATABASE_URL)
    conn.autocommit = True
    cur = conn.cursor()

    print("Creating tables...")
    cur.execute(SQL)

    print("Seeding tracking numbers...")
    cur.execute(SEED_TRACKING_NUMBERS)

    # Verify
    cur.execute("SELECT table_name FROM information_schema.tables WHERE table_schema = 'public' ORDER BY table_name;")
    tables = cur.fetchall()
    print(f"\nTables created: {[t[0] for t in tables]}")

    cur.execute("SELECT channel_key, crm_campaign_id FROM tracking_numbers;")
    channels = cur.fetchall()
    print(f"Tracking numbers: {channels}")

    cur.close()
    conn.close()
    print("\nDone!")

if __name__ == "__main__":
    main()
