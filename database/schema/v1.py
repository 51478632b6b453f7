"""Schema v1 - Document table.

Every collection (users, follows, posts, comments, likes, favorites, products,
product_reviews, favorite_products) is stored as JSONB rows keyed by
(collection, id). Row changes are announced on the ``document_changes``
channel so live listeners can re-run their queries.
"""

schema = {
    'version': 1,
    'tables': [
        {
            'name': 'documents',
            'columns': [
                {'name': 'collection', 'type': 'TEXT', 'nullable': False},
                {'name': 'id', 'type': 'TEXT', 'nullable': False},
                {'name': 'data', 'type': 'JSONB', 'nullable': False, 'default': "'{}'::jsonb"},
                {'name': 'created_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'},
                {'name': 'updated_at', 'type': 'TIMESTAMPTZ', 'nullable': False, 'default': 'now()'}
            ],
            'primary_key': ['collection', 'id'],
            'indexes': [
                {'name': 'idx_documents_collection', 'columns': ['collection']},
                {'name': 'idx_documents_data', 'columns': ['data'], 'using': 'GIN'}
            ]
        }
    ],
    'triggers': [
        {
            'name': 'documents_notify_change',
            'function_name': 'notify_document_change',
            'timing': 'AFTER',
            'event': 'INSERT OR UPDATE OR DELETE',
            'table': 'documents',
            'function_body': '''
                BEGIN
                    IF TG_OP = 'DELETE' THEN
                        PERFORM pg_notify('document_changes', OLD.collection || ':' || OLD.id);
                        RETURN OLD;
                    END IF;
                    PERFORM pg_notify('document_changes', NEW.collection || ':' || NEW.id);
                    RETURN NEW;
                END;
            '''
        }
    ]
}
