import asyncpg

from chatsage.core.config import REGISTRY_CHANGES_CHANNEL


async def setup_registry_schema(connection: asyncpg.Connection) -> None:
    """Create the managed_channels table and its change-notification trigger."""
    await connection.execute(
        """CREATE TABLE IF NOT EXISTS managed_channels(
            channel_name TEXT PRIMARY KEY CHECK (channel_name = lower(channel_name)),
            is_active BOOLEAN NOT NULL DEFAULT false,
            display_name TEXT,
            email TEXT,
            twitch_user_id TEXT,
            refresh_token_secret_path TEXT,
            ad_notifications_enabled BOOLEAN NOT NULL DEFAULT false,
            needs_reauth BOOLEAN NOT NULL DEFAULT false,
            last_token_error TEXT,
            last_token_error_at TIMESTAMP WITH TIME ZONE,
            added_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP,
            last_status_change TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
        )"""
    )

    await connection.execute(
        f"""
        CREATE OR REPLACE FUNCTION notify_managed_channel_change()
        RETURNS TRIGGER AS $$
        DECLARE
            change_type TEXT;
            doc JSON;
        BEGIN
            IF TG_OP = 'INSERT' THEN
                change_type := 'added';
                doc := row_to_json(NEW);
            ELSIF TG_OP = 'UPDATE' THEN
                change_type := 'modified';
                doc := row_to_json(NEW);
            ELSE
                change_type := 'removed';
                doc := row_to_json(OLD);
            END IF;

            PERFORM pg_notify(
                '{REGISTRY_CHANGES_CHANNEL}',
                json_build_object('type', change_type, 'doc', doc)::text
            );

            RETURN NULL;
        END;
        $$ LANGUAGE plpgsql;
        """
    )

    await connection.execute(
        """
        DROP TRIGGER IF EXISTS managed_channel_change_trigger ON managed_channels;
        CREATE TRIGGER managed_channel_change_trigger
        AFTER INSERT OR UPDATE OR DELETE ON managed_channels
        FOR EACH ROW
        EXECUTE FUNCTION notify_managed_channel_change();
        """
    )
