"""Storage layer for blog_archiver."""

from .database import (
    get_database,
    init_database,
    close_database,
    transaction,
    create_blog,
    get_blog,
    list_blogs,
    delete_blog,
    recompute_blog_stats,
    create_import_record,
    finish_import_record,
    get_import_records,
    insert_article,
    list_articles,
    get_article_tags,
    get_article_texts,
    get_article_blog_id,
    get_article_titles,
    articles_needing_summary,
    update_summary,
    export_blog,
    set_reading_status,
    get_reading_status,
    start_reading_session,
    end_reading_session,
    save_embedding,
    load_embeddings,
)

__all__ = [
    "get_database",
    "init_database",
    "close_database",
    "transaction",
    "create_blog",
    "get_blog",
    "list_blogs",
    "delete_blog",
    "recompute_blog_stats",
    "create_import_record",
    "finish_import_record",
    "get_import_records",
    "insert_article",
    "list_articles",
    "get_article_tags",
    "get_article_texts",
    "get_article_blog_id",
    "get_article_titles",
    "articles_needing_summary",
    "update_summary",
    "export_blog",
    "set_reading_status",
    "get_reading_status",
    "start_reading_session",
    "end_reading_session",
    "save_embedding",
    "load_embeddings",
]
