from __future__ import annotations

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    create table if not exists agents (
      id bigserial primary key,
      on_chain_id bigint not null unique,
      owner_address text not null,
      wallet_address text not null,
      registration_uri text not null default '',
      name text,
      description text,
      image_url text,
      skills jsonb,
      reputation_score integer not null default 50,
      completed_bounties integer not null default 0,
      total_earnings numeric(78, 0) not null default 0,
      created_at timestamptz not null default now(),
      updated_at timestamptz not null default now()
    )
    """,
    "create index if not exists idx_agents_reputation on agents (reputation_score desc)",
    """
    create table if not exists bounties (
      id bigserial primary key,
      on_chain_id bigint not null unique,
      creator_agent_id bigint not null,
      title text not null default '',
      reward_amount numeric(78, 0) not null,
      reward_token text not null,
      deadline timestamptz,
      status text not null default 'open'
        check (status in ('open', 'claimed', 'submitted', 'approved', 'rejected',
                          'disputed', 'paid', 'cancelled', 'expired')),
      claimed_by bigint,
      claimed_at timestamptz,
      submission_uri text,
      submitted_at timestamptz,
      rejection_reason text,
      dispute_id bigint,
      created_at timestamptz not null default now(),
      updated_at timestamptz not null default now()
    )
    """,
    "create index if not exists idx_bounties_status on bounties (status)",
    "create index if not exists idx_bounties_deadline on bounties (deadline)",
    """
    create table if not exists reviews (
      id bigserial primary key,
      bounty_on_chain_id bigint not null,
      from_agent_id bigint,
      to_agent_id bigint not null,
      rating integer not null,
      feedback text not null default '',
      created_at timestamptz not null default now(),
      unique (bounty_on_chain_id, to_agent_id)
    )
    """,
    """
    create table if not exists applied_events (
      block_number bigint not null,
      log_index integer not null,
      source text not null,
      event_name text not null,
      applied_at timestamptz not null default now(),
      primary key (block_number, log_index)
    )
    """,
    """
    create table if not exists indexer_state (
      key text primary key,
      value text not null,
      updated_at timestamptz not null default now()
    )
    """,
)


def render_schema_sql() -> str:
    parts = ["-- bounty-indexer projection schema", ""]
    for statement in SCHEMA_STATEMENTS:
        lines = [line[4:] if line.startswith("    ") else line for line in statement.strip("\n").splitlines()]
        parts.append("\n".join(lines).rstrip() + ";")
        parts.append("")
    return "\n".join(parts)
