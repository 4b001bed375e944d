"""Run the gh-artifact-sync service."""

from gh_artifact_sync.tool.gh_artifact_sync import main

if __name__ == "__main__":
    main()
