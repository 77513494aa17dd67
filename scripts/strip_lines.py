# scripts/strip_lines.py
# Keep every n-th line of the input (params.keep_every).
from bettermake.script import current_job


def main():
    job = current_job()
    keep_every = int(job.params.keep_every)
    with open(job.input[0], encoding="utf-8") as src:
        lines = src.readlines()
    kept = [line for i, line in enumerate(lines) if i % keep_every == 0]
    with open(job.output[0], "w", encoding="utf-8") as dst:
        dst.writelines(kept)
    print(f"{job.wildcards.sample}: kept {len(kept)} of {len(lines)} lines")


if __name__ == "__main__":
    main()
