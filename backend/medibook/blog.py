"""
Blog posts written by doctors and admins.

Slugs are derived from titles and kept unique; reading time is derived
from the content. Counters are incremented in SQL so concurrent readers
never lose a view or like.
"""

import logging
import math
import re
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import func, or_, update
from sqlmodel import SQLModel, Field, Session, select

from .auth import require_role
from .database import get_session
from .errors import Forbidden, NotFound
from .models import BlogPost, User, utcnow

router = APIRouter()
logger = logging.getLogger(__name__)

WORDS_PER_MINUTE = 200
DEFAULT_SLUG = "post"
# Slugs already taken by fixed /blog routes
RESERVED_SLUGS = {"popular"}

BlogCategory = Literal[
    "general-health",
    "mental-health",
    "nutrition",
    "fitness",
    "pediatrics",
    "cardiology",
    "dermatology",
    "orthopedics",
    "neurology",
    "oncology",
    "other",
]
BlogStatus = Literal["draft", "published", "archived"]


# ---------- SCHEMAS ----------

class BlogPostCreate(SQLModel):
    title: str = Field(min_length=1, max_length=200)
    content: str = Field(min_length=1)
    excerpt: Optional[str] = Field(default=None, max_length=300)
    category: BlogCategory
    tags: List[str] = []
    featured_image: str = ""
    status: BlogStatus = "draft"
    is_featured: bool = False


class BlogPostUpdate(SQLModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    content: Optional[str] = Field(default=None, min_length=1)
    excerpt: Optional[str] = Field(default=None, max_length=300)
    category: Optional[BlogCategory] = None
    tags: Optional[List[str]] = None
    featured_image: Optional[str] = None
    status: Optional[BlogStatus] = None
    is_featured: Optional[bool] = None


class BlogPostSummary(SQLModel):
    id: int
    title: str
    slug: str
    excerpt: Optional[str]
    category: str
    featured_image: str
    reading_time: int
    views: int
    likes: int
    published_at: Optional[datetime]


class BlogPostPage(SQLModel):
    posts: List[BlogPostSummary]
    total: int
    total_pages: int
    current_page: int


# ---------- HELPERS ----------

def slugify(title: str) -> str:
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug, flags=re.ASCII)
    slug = re.sub(r"[\s_-]+", "-", slug)
    return slug.strip("-")


def generate_unique_slug(session: Session, title: str, post_id: Optional[int] = None) -> str:
    """
    Slug for ``title`` that no other post holds, suffixing -1, -2, ...
    as needed. ``post_id`` is the post being renamed, which may keep its
    own slug.
    """
    base_slug = slugify(title) or DEFAULT_SLUG
    slug = base_slug
    counter = 1
    while True:
        statement = select(BlogPost.id).where(BlogPost.slug == slug)
        if post_id is not None:
            statement = statement.where(BlogPost.id != post_id)
        if slug not in RESERVED_SLUGS and session.exec(statement).first() is None:
            return slug
        slug = f"{base_slug}-{counter}"
        counter += 1


def calculate_reading_time(content: str) -> int:
    return math.ceil(len(content.split()) / WORDS_PER_MINUTE)


def increment_counter(session: Session, post_id: int, column: str) -> BlogPost:
    counter = getattr(BlogPost, column)
    session.execute(
        update(BlogPost)
        .where(BlogPost.id == post_id)
        .values({column: counter + 1})
        .execution_options(synchronize_session=False)
    )
    session.commit()
    post = session.get(BlogPost, post_id)
    session.refresh(post)
    return post


def get_post(session: Session, post_id: int) -> BlogPost:
    post = session.get(BlogPost, post_id)
    if post is None:
        raise NotFound("Blog post not found.")
    return post


def get_published_post(session: Session, post_id: int) -> BlogPost:
    post = get_post(session, post_id)
    if post.status != "published":
        raise NotFound("Blog post not found.")
    return post


def require_author(post: BlogPost, user: User):
    if user.role != "admin" and post.author_id != user.id:
        raise Forbidden("Only the author or an admin can modify this post.")


# ---------- ROUTES ----------

@router.get("", response_model=BlogPostPage)
def list_posts(
    category: Optional[BlogCategory] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=50),
    session: Session = Depends(get_session),
):
    """
    Published posts, newest first.
    """
    conditions = [BlogPost.status == "published"]
    if category:
        conditions.append(BlogPost.category == category)
    if search:
        pattern = f"%{search}%"
        conditions.append(or_(
            BlogPost.title.ilike(pattern),
            BlogPost.excerpt.ilike(pattern),
            BlogPost.content.ilike(pattern),
        ))

    statement = (
        select(BlogPost)
        .where(*conditions)
        .order_by(BlogPost.published_at.desc(), BlogPost.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    total = session.exec(select(func.count(BlogPost.id)).where(*conditions)).one()
    return BlogPostPage(
        posts=session.exec(statement).all(),
        total=total,
        total_pages=math.ceil(total / limit),
        current_page=page,
    )


@router.get("/popular", response_model=List[BlogPostSummary])
def popular_posts(limit: int = Query(5, ge=1, le=20), session: Session = Depends(get_session)):
    statement = (
        select(BlogPost)
        .where(BlogPost.status == "published")
        .order_by(BlogPost.views.desc(), BlogPost.likes.desc(), BlogPost.id)
        .limit(limit)
    )
    return session.exec(statement).all()


@router.get("/{slug}", response_model=BlogPost)
def get_post_by_slug(slug: str, session: Session = Depends(get_session)):
    post = session.exec(
        select(BlogPost).where(BlogPost.slug == slug, BlogPost.status == "published")
    ).first()
    if post is None:
        raise NotFound("Blog post not found.")
    return increment_counter(session, post.id, "views")


@router.post("", response_model=BlogPost, status_code=status.HTTP_201_CREATED)
def create_post(
    body: BlogPostCreate,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_role("doctor", "admin")),
):
    post = BlogPost(
        **body.model_dump(),
        slug=generate_unique_slug(session, body.title),
        author_id=current_user.id,
        reading_time=calculate_reading_time(body.content),
        published_at=utcnow() if body.status == "published" else None,
    )
    session.add(post)
    session.commit()
    session.refresh(post)
    logger.info(f"Blog post '{post.slug}' created by user {current_user.id}")
    return post


@router.put("/{post_id}", response_model=BlogPost)
def update_post(
    post_id: int,
    body: BlogPostUpdate,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_role("doctor", "admin")),
):
    post = get_post(session, post_id)
    require_author(post, current_user)

    changes = {field: value for field, value in body.model_dump(exclude_unset=True).items() if value is not None}
    if "title" in changes and changes["title"] != post.title:
        post.slug = generate_unique_slug(session, changes["title"], post.id)
    if "content" in changes:
        post.reading_time = calculate_reading_time(changes["content"])
    if changes.get("status") == "published" and post.published_at is None:
        post.published_at = utcnow()

    for field, value in changes.items():
        setattr(post, field, value)
    post.updated_at = utcnow()
    session.add(post)
    session.commit()
    session.refresh(post)
    return post


@router.delete("/{post_id}")
def delete_post(
    post_id: int,
    session: Session = Depends(get_session),
    current_user: User = Depends(require_role("doctor", "admin")),
):
    post = get_post(session, post_id)
    require_author(post, current_user)
    session.delete(post)
    session.commit()
    logger.info(f"Blog post {post_id} deleted by user {current_user.id}")
    return {"message": "Blog post deleted successfully"}


@router.post("/{post_id}/like")
def like_post(post_id: int, session: Session = Depends(get_session)):
    get_published_post(session, post_id)
    post = increment_counter(session, post_id, "likes")
    return {"likes": post.likes}


@router.post("/{post_id}/share")
def share_post(post_id: int, session: Session = Depends(get_session)):
    get_published_post(session, post_id)
    post = increment_counter(session, post_id, "shares")
    return {"shares": post.shares}
